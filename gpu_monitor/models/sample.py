"""
GPU telemetry sample data structures
"""

from datetime import datetime
from typing import NamedTuple, Optional
from dataclasses import dataclass
from enum import Enum


# Label value used when none of the candidate label keys is present
UNKNOWN = "unknown"

# Job label values that mean "no job assigned to this device"
SENTINEL_JOB_IDS = frozenset({"0", ""})


class MetricKind(Enum):
   """Kinds of device-level telemetry"""
   UTILIZATION = "utilization"
   MEMORY_USED = "memory_used"
   MEMORY_FREE = "memory_free"


class DeviceKey(NamedTuple):
   """Identifies one physical GPU: (hostname, device index)"""
   hostname: str
   device: str

   @property
   def is_fully_labeled(self) -> bool:
      return self.hostname != UNKNOWN and self.device != UNKNOWN


@dataclass
class GPUSample:
   """One numeric reading for one device at one instant"""

   job_id: str
   hostname: str
   device: str
   kind: MetricKind
   value: float
   device_model: str = UNKNOWN
   timestamp: Optional[datetime] = None

   @property
   def device_key(self) -> DeviceKey:
      return DeviceKey(self.hostname, self.device)

   @property
   def is_assigned(self) -> bool:
      """True when the sample belongs to a real job"""
      return self.job_id not in SENTINEL_JOB_IDS and self.job_id != UNKNOWN
