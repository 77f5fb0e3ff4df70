"""
GPU utilization statistics data structures
"""

import math
from typing import Dict, List, Optional, Any, Sequence
from dataclasses import dataclass, field
from enum import Enum


# Jobs averaging below this utilization (percent) are reported as underutilized
UNDERUTILIZED_THRESHOLD = 30.0


def is_underutilized(avg_utilization: Optional[float]) -> bool:
   """Check a job or fleet average against the underutilization threshold"""
   if avg_utilization is None:
      return False
   return avg_utilization < UNDERUTILIZED_THRESHOLD


def round_metric(value: Optional[float], decimal_places: int = 1) -> Optional[float]:
   """Round a metric for presentation; None passes through"""
   if value is None:
      return None
   return round(float(value), decimal_places)


def percentile_95(values: Sequence[float]) -> float:
   """
   95th percentile by nearest rank: sorted[min(floor(n * 0.95), n - 1)]

   Returns 0.0 for an empty sequence.
   """
   if not values:
      return 0.0
   ordered = sorted(values)
   index = min(int(math.floor(len(ordered) * 0.95)), len(ordered) - 1)
   return ordered[index]


class StatsSource(Enum):
   """Where a statistic was read from"""
   PRECOMPUTED = "precomputed"
   DIRECT = "direct"
   STORED = "stored"


@dataclass
class CycleJobMetrics:
   """Per-job statistics computed from the samples of one capture cycle"""

   job_id: str
   avg_utilization: float
   max_utilization: float
   min_utilization: float
   avg_memory_pct: float
   max_memory_pct: float
   gpu_count: int


@dataclass
class JobGPUStats:
   """GPU usage summary for a single job"""

   job_id: str
   avg_utilization: float
   p95_utilization: float
   memory_pct: float
   gpu_count: int
   source: StatsSource

   # Only known for stored aggregates
   is_complete: Optional[bool] = None

   # Attached from the workload manager when available
   user_name: Optional[str] = None
   account: Optional[str] = None

   @property
   def is_underutilized(self) -> bool:
      return is_underutilized(self.avg_utilization)

   def to_dict(self) -> Dict[str, Any]:
      data = {
         'jobId': self.job_id,
         'avgUtilization': round_metric(self.avg_utilization),
         'p95Utilization': round_metric(self.p95_utilization),
         'memoryPct': round_metric(self.memory_pct),
         'gpuCount': self.gpu_count,
         'isUnderutilized': self.is_underutilized,
         'source': self.source.value
      }
      if self.is_complete is not None:
         data['isComplete'] = self.is_complete
      if self.user_name is not None:
         data['userName'] = self.user_name
      if self.account is not None:
         data['account'] = self.account
      return data


@dataclass
class FleetGPUStats:
   """GPU usage summary across all active jobs"""

   avg_utilization: float
   p95_utilization: float
   memory_utilization: float
   total_gpus: int
   active_jobs: int
   underutilized_jobs: int
   source: StatsSource

   def to_dict(self) -> Dict[str, Any]:
      return {
         'avgUtilization': round_metric(self.avg_utilization),
         'p95Utilization': round_metric(self.p95_utilization),
         'memoryUtilization': round_metric(self.memory_utilization),
         'totalGPUs': self.total_gpus,
         'activeJobs': self.active_jobs,
         'underutilizedJobs': self.underutilized_jobs,
         'source': self.source.value
      }


def wasted_gpu_hours(avg_utilization: float, gpu_count: int,
                     duration_hours: Optional[float]) -> float:
   """Idle share of the GPU-hours a job held; 0 when the duration is unknown"""
   if not duration_hours or duration_hours <= 0:
      return 0.0
   idle_fraction = max(0.0, 100.0 - avg_utilization) / 100.0
   return idle_fraction * gpu_count * duration_hours


@dataclass
class FleetJobEntry:
   """One job row of the fleet utilization report"""

   job_id: str
   avg_utilization: float
   gpu_count: int
   user_name: Optional[str] = None
   account: Optional[str] = None
   node_names: List[str] = field(default_factory=list)
   gpu_model: Optional[str] = None
   duration_hours: Optional[float] = None

   @property
   def is_underutilized(self) -> bool:
      return is_underutilized(self.avg_utilization)

   @property
   def wasted_gpu_hours(self) -> float:
      return wasted_gpu_hours(self.avg_utilization, self.gpu_count, self.duration_hours)

   def to_dict(self) -> Dict[str, Any]:
      return {
         'jobId': self.job_id,
         'userName': self.user_name,
         'account': self.account,
         'avgUtilization': round_metric(self.avg_utilization),
         'gpuCount': self.gpu_count,
         'isUnderutilized': self.is_underutilized,
         'nodeNames': list(self.node_names),
         'gpuModel': self.gpu_model,
         'durationHours': round_metric(self.duration_hours),
         'wastedGpuHours': round_metric(self.wasted_gpu_hours)
      }


@dataclass
class FleetReport:
   """Per-job utilization report with system-wide totals"""

   jobs: List[FleetJobEntry]
   source: StatsSource
   time_range: str

   # System metrics from recording rules override the values derived from jobs
   average_utilization: Optional[float] = None
   underutilized_job_count: Optional[int] = None
   total_wasted_gpu_hours: Optional[float] = None

   def __post_init__(self):
      if self.average_utilization is None:
         self.average_utilization = (
            sum(job.avg_utilization for job in self.jobs) / len(self.jobs) if self.jobs else 0.0
         )
      if self.underutilized_job_count is None:
         self.underutilized_job_count = sum(1 for job in self.jobs if job.is_underutilized)
      if self.total_wasted_gpu_hours is None:
         self.total_wasted_gpu_hours = sum(job.wasted_gpu_hours for job in self.jobs)

   @property
   def total_jobs(self) -> int:
      return len(self.jobs)

   def to_dict(self) -> Dict[str, Any]:
      return {
         'jobs': [job.to_dict() for job in self.jobs],
         'systemMetrics': {
            'averageUtilization': round_metric(self.average_utilization),
            'underutilizedJobCount': self.underutilized_job_count,
            'totalWastedGpuHours': round_metric(self.total_wasted_gpu_hours),
            'totalJobs': self.total_jobs
         },
         'timeRange': self.time_range,
         'source': self.source.value
      }


@dataclass
class NodeGPUReading:
   """Recent utilization of one GPU on a node"""

   hostname: str
   device: str
   utilization: float
   device_model: Optional[str] = None
   job_id: Optional[str] = None

   def to_dict(self) -> Dict[str, Any]:
      return {
         'hostname': self.hostname,
         'gpu': self.device,
         'utilization': round_metric(self.utilization),
         'gpuModel': self.device_model,
         'jobId': self.job_id
      }


@dataclass
class CaptureResult:
   """Outcome of one ingest cycle"""

   captured: int = 0
   updated: int = 0
   skipped: int = 0
   marked_complete: int = 0
   errors: List[str] = field(default_factory=list)
   rate_limited: bool = False
   next_capture_in: Optional[int] = None

   def to_dict(self) -> Dict[str, Any]:
      data = {
         'captured': self.captured,
         'updated': self.updated,
         'markedComplete': self.marked_complete,
         'errors': list(self.errors)
      }
      if self.skipped:
         data['skipped'] = self.skipped
      if self.rate_limited:
         data['rateLimited'] = True
         data['nextCaptureIn'] = self.next_capture_in
      return data
