"""
Rolling aggregation of GPU telemetry into per-job statistics

One capture cycle pulls the current device samples, reduces them to one
set of statistics per job and merges those into the aggregate store.
Jobs that stop reporting are marked complete after a grace window.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .config import Config, PrometheusConfig, CaptureConfig
from .database.repositories import JobGPUMetricsRepository, MergeOutcome
from .extraction import extract_samples
from .metrics_backend import PrometheusQueryClient, MetricsQueryError
from .models.gpu_stats import CaptureResult, CycleJobMetrics
from .models.sample import GPUSample, DeviceKey, MetricKind
from .promql import QueryBuilder
from .rate_limiter import CaptureRateLimiter
from .utils.concurrency import run_concurrently


logger = logging.getLogger(__name__)


def memory_percent_by_device(mem_used: List[GPUSample],
                             mem_free: List[GPUSample]) -> Dict[DeviceKey, float]:
   """
   Join framebuffer used/free samples into a memory percentage per device

   Devices with only one half of the pair, or a zero total, map to 0.0.
   Only fully labeled devices can be joined.
   """
   used = {s.device_key: s.value for s in mem_used if s.device_key.is_fully_labeled}
   free = {s.device_key: s.value for s in mem_free if s.device_key.is_fully_labeled}

   percentages: Dict[DeviceKey, float] = {}
   for key in set(used) | set(free):
      if key in used and key in free:
         total = used[key] + free[key]
         percentages[key] = used[key] / total * 100.0 if total > 0 else 0.0
      else:
         percentages[key] = 0.0
   return percentages


def group_device_samples(samples: List[GPUSample]) -> Dict[str, List[GPUSample]]:
   """
   Group assigned samples by job with one sample per device

   Repeated samples for a fully labeled device keep the last value.
   Samples missing a host or device label each count as their own device.
   """
   by_device: Dict[str, Dict[DeviceKey, GPUSample]] = defaultdict(dict)
   unlabeled: Dict[str, List[GPUSample]] = defaultdict(list)

   for sample in samples:
      if not sample.is_assigned:
         continue
      if sample.device_key.is_fully_labeled:
         by_device[sample.job_id][sample.device_key] = sample
      else:
         unlabeled[sample.job_id].append(sample)

   grouped: Dict[str, List[GPUSample]] = {}
   for job_id in set(by_device) | set(unlabeled):
      grouped[job_id] = list(by_device[job_id].values()) + unlabeled[job_id]
   return grouped


def compute_cycle_metrics(util: List[GPUSample],
                          mem_used: Optional[List[GPUSample]] = None,
                          mem_free: Optional[List[GPUSample]] = None) -> Dict[str, CycleJobMetrics]:
   """
   Reduce one cycle's samples to per-job statistics

   Args:
      util: Utilization samples
      mem_used: Framebuffer-used samples (optional)
      mem_free: Framebuffer-free samples (optional)

   Returns:
      Job id to CycleJobMetrics; sentinel and unlabeled job ids are dropped
   """
   memory_pct = memory_percent_by_device(mem_used or [], mem_free or [])
   metrics: Dict[str, CycleJobMetrics] = {}

   for job_id, devices in group_device_samples(util).items():
      if not devices:
         continue
      values = [s.value for s in devices]
      memory = [memory_pct.get(s.device_key, 0.0) if s.device_key.is_fully_labeled else 0.0
                for s in devices]

      metrics[job_id] = CycleJobMetrics(
         job_id=job_id,
         avg_utilization=sum(values) / len(values),
         max_utilization=max(values),
         min_utilization=min(values),
         avg_memory_pct=sum(memory) / len(memory),
         max_memory_pct=max(memory),
         gpu_count=len(devices)
      )

   return metrics


class RollingAggregator:
   """Runs capture cycles against the metrics backend and the aggregate store"""

   def __init__(self,
                metrics_client: PrometheusQueryClient,
                repository: Optional[JobGPUMetricsRepository],
                prometheus_config: Optional[PrometheusConfig] = None,
                capture_config: Optional[CaptureConfig] = None,
                rate_limiter: Optional[CaptureRateLimiter] = None,
                clock: Optional[Callable[[], datetime]] = None,
                max_workers: int = 8):
      self.metrics_client = metrics_client
      self.repository = repository
      self.queries = QueryBuilder(prometheus_config or PrometheusConfig())
      self.capture_config = capture_config or CaptureConfig()
      self.rate_limiter = rate_limiter
      self.clock = clock or (lambda: datetime.now(timezone.utc))
      self.max_workers = max_workers
      self.logger = logger

   @classmethod
   def from_config(cls, config: Config, metrics_client: PrometheusQueryClient,
                   repository: JobGPUMetricsRepository,
                   clock: Optional[Callable[[], datetime]] = None) -> 'RollingAggregator':
      """Build an aggregator with a rate limiter sharing the same clock"""
      rate_limiter = CaptureRateLimiter(repository, config.capture.min_capture_interval, clock)
      return cls(metrics_client, repository,
                 prometheus_config=config.prometheus,
                 capture_config=config.capture,
                 rate_limiter=rate_limiter,
                 clock=clock,
                 max_workers=config.prometheus.max_workers)

   def _fetch_samples(self, result: CaptureResult) -> Optional[Dict[MetricKind, List[GPUSample]]]:
      queries = {
         MetricKind.UTILIZATION: self.queries.utilization(),
         MetricKind.MEMORY_USED: self.queries.memory_used(),
         MetricKind.MEMORY_FREE: self.queries.memory_free(),
      }
      calls = {kind: (lambda q=query: self.metrics_client.instant_query(q))
               for kind, query in queries.items()}
      responses, errors = run_concurrently(calls, max_workers=self.max_workers,
                                           expected_errors=(MetricsQueryError,))

      for kind in queries:
         if kind in errors:
            message = f"{kind.value} query failed: {str(errors[kind])}"
            self.logger.warning(message)
            result.errors.append(message)

      if MetricKind.UTILIZATION in errors:
         return None

      return {kind: extract_samples(responses[kind], kind) if kind in responses else []
              for kind in queries}

   def run_capture_cycle(self) -> CaptureResult:
      """
      Run one capture cycle

      Returns:
         CaptureResult with merge and sweep counts, collected errors, or the
         rate-limit rejection

      Raises:
         RuntimeError: If no aggregate store is configured
      """
      if self.repository is None:
         raise RuntimeError("No aggregate store configured for capture")

      if self.rate_limiter is not None:
         decision = self.rate_limiter.check()
         if not decision.allowed:
            return CaptureResult(rate_limited=True, next_capture_in=decision.retry_after)

      result = CaptureResult()

      samples = self._fetch_samples(result)
      if samples is None:
         # Without utilization data every job would look silent
         self.logger.error("Utilization query failed; skipping merge and completion sweep")
         return result

      metrics = compute_cycle_metrics(samples[MetricKind.UTILIZATION],
                                      samples[MetricKind.MEMORY_USED],
                                      samples[MetricKind.MEMORY_FREE])
      now = self.clock()

      for job_id, job_metrics in metrics.items():
         try:
            outcome = self.repository.upsert_cycle_metrics(job_metrics, now)
         except SQLAlchemyError as e:
            message = f"Failed to store metrics for job {job_id}: {str(e)}"
            self.logger.error(message)
            result.errors.append(message)
            continue

         if outcome is MergeOutcome.INSERTED:
            result.captured += 1
         elif outcome is MergeOutcome.UPDATED:
            result.updated += 1
         else:
            result.skipped += 1
            self.logger.debug(f"Job {job_id} is already complete; left unchanged")

      cutoff = now - timedelta(minutes=self.capture_config.completion_grace_minutes)
      try:
         result.marked_complete = self.repository.mark_stale_complete(metrics.keys(), cutoff)
      except SQLAlchemyError as e:
         message = f"Completion sweep failed: {str(e)}"
         self.logger.error(message)
         result.errors.append(message)

      self.logger.info(f"Capture cycle: {result.captured} new, {result.updated} updated, "
                       f"{result.marked_complete} completed, {len(result.errors)} errors")
      return result
