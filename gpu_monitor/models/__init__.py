"""
Data models for GPU telemetry and Slurm job entities
"""

from .sample import GPUSample, DeviceKey, MetricKind, UNKNOWN
from .job import JobInfo
from .gpu_stats import (
   UNDERUTILIZED_THRESHOLD, StatsSource, CycleJobMetrics, JobGPUStats,
   FleetGPUStats, FleetJobEntry, FleetReport, NodeGPUReading, CaptureResult
)

__all__ = [
   'GPUSample', 'DeviceKey', 'MetricKind', 'UNKNOWN', 'JobInfo',
   'UNDERUTILIZED_THRESHOLD', 'StatsSource', 'CycleJobMetrics', 'JobGPUStats',
   'FleetGPUStats', 'FleetJobEntry', 'FleetReport', 'NodeGPUReading', 'CaptureResult'
]
