"""
Capture rate limiting based on the freshest stored aggregate
"""

import math
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database.models import ensure_utc
from .database.repositories import JobGPUMetricsRepository


@dataclass
class RateLimitDecision:
   """Whether a capture cycle may run now"""

   allowed: bool
   seconds_since_last: Optional[float] = None
   retry_after: Optional[int] = None


class CaptureRateLimiter:
   """Rejects capture cycles that follow the previous one too closely"""

   def __init__(self, repository: JobGPUMetricsRepository, min_interval: int = 60,
                clock: Optional[Callable[[], datetime]] = None):
      self.repository = repository
      self.min_interval = min_interval
      self.clock = clock or (lambda: datetime.now(timezone.utc))
      self.logger = logging.getLogger(__name__)

   def check(self) -> RateLimitDecision:
      """
      Compare the newest active last_seen with the minimum interval

      A failing store lookup allows the cycle.
      """
      try:
         latest = self.repository.latest_active_update()
      except SQLAlchemyError as e:
         self.logger.warning(f"Rate limit lookup failed, allowing capture: {str(e)}")
         return RateLimitDecision(allowed=True)

      if latest is None:
         return RateLimitDecision(allowed=True)

      elapsed = (ensure_utc(self.clock()) - latest).total_seconds()
      if elapsed < self.min_interval:
         retry_after = max(1, math.ceil(self.min_interval - elapsed))
         self.logger.info(f"Capture rate limited: last update {elapsed:.0f}s ago, "
                          f"next capture in {retry_after}s")
         return RateLimitDecision(allowed=False, seconds_since_last=elapsed, retry_after=retry_after)

      return RateLimitDecision(allowed=True, seconds_since_last=elapsed)
