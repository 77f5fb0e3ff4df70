"""
PromQL query builders for DCGM metrics and GPU recording rules
"""

import re
from datetime import timedelta
from typing import Dict, Optional

from .config import PrometheusConfig


# Recording rules maintained on the Prometheus side
RULE_JOB_UTIL_AVG = "job:gpu_utilization:current_avg"
RULE_JOB_UTIL_P95 = "job:gpu_utilization:current_p95"
RULE_JOB_MEMORY_PCT = "job:gpu_memory:current_avg_pct"
RULE_JOB_GPU_COUNT = "job:gpu_count:current"
RULE_JOB_UNDERUTILIZED = "job:gpu_underutilized:bool"
RULE_JOB_DURATION = "job:duration_seconds:current"
RULE_SYSTEM_WASTED_HOURS = "system:wasted_gpu_hours:total"

# Fleet-wide aggregations over the job-level rules
OVERVIEW_QUERIES = {
   'avg_utilization': f"avg({RULE_JOB_UTIL_AVG})",
   'p95_utilization': f"quantile(0.95, {RULE_JOB_UTIL_AVG})",
   'memory_utilization': f"avg({RULE_JOB_MEMORY_PCT})",
   'total_gpus': f"sum({RULE_JOB_GPU_COUNT})",
   'active_jobs': f"count({RULE_JOB_UTIL_AVG})",
   'underutilized_jobs': f"count({RULE_JOB_UNDERUTILIZED} == 1)",
}

_TIME_RANGE_PATTERN = re.compile(r'^\d+[smhdwy]$')


def escape_label_value(value: str) -> str:
   """Escape a value for use inside a double-quoted PromQL label matcher"""
   return (str(value)
           .replace('\\', '\\\\')
           .replace('"', '\\"')
           .replace('\n', '\\n'))


def selector(metric: str, matchers: Optional[Dict[str, str]] = None) -> str:
   """
   Build an instant-vector selector with equality matchers

   Args:
      metric: Metric or recording rule name
      matchers: Label name to value; values are escaped

   Returns:
      PromQL selector string, e.g. metric{hpc_job="42"}
   """
   if not matchers:
      return metric
   parts = [f'{label}="{escape_label_value(value)}"' for label, value in matchers.items()]
   return f"{metric}{{{', '.join(parts)}}}"


_UNIT_SECONDS = {'s': 1, 'm': 60, 'h': 3600, 'd': 86400, 'w': 604800, 'y': 31536000}


def validate_time_range(time_range: str) -> str:
   """Check a PromQL duration such as 7d or 24h"""
   if not _TIME_RANGE_PATTERN.match(time_range or ''):
      raise ValueError(f"Invalid time range: {time_range!r} (expected e.g. 24h, 7d)")
   return time_range


def time_range_to_timedelta(time_range: str) -> timedelta:
   """Convert a PromQL duration to a timedelta"""
   validate_time_range(time_range)
   return timedelta(seconds=int(time_range[:-1]) * _UNIT_SECONDS[time_range[-1]])


class QueryBuilder:
   """Builds the raw-metric queries for one Prometheus configuration"""

   def __init__(self, config: PrometheusConfig):
      self.config = config

   def assigned(self, metric: str) -> str:
      """Series of metric that belong to a job (sentinel ids excluded)"""
      job_label = self.config.job_label
      return f'{metric}{{{job_label}!="0", {job_label}!=""}}'

   def utilization(self) -> str:
      return self.assigned(self.config.utilization_metric)

   def memory_used(self) -> str:
      return self.assigned(self.config.memory_used_metric)

   def memory_free(self) -> str:
      return self.assigned(self.config.memory_free_metric)

   def job_metric(self, metric: str, job_id: str) -> str:
      return selector(metric, {self.config.job_label: job_id})

   def job_utilization(self, job_id: str) -> str:
      return self.job_metric(self.config.utilization_metric, job_id)

   def job_memory_used(self, job_id: str) -> str:
      return self.job_metric(self.config.memory_used_metric, job_id)

   def job_memory_free(self, job_id: str) -> str:
      return self.job_metric(self.config.memory_free_metric, job_id)

   def freshness(self, job_id: str, window_seconds: int) -> str:
      return f"last_over_time({self.job_utilization(job_id)}[{int(window_seconds)}s])"

   def job_rule(self, rule: str, job_id: str) -> str:
      return selector(rule, {self.config.job_label: job_id})

   def job_duration_hours(self, job_id: str, time_range: str) -> str:
      validate_time_range(time_range)
      series = self.job_utilization(job_id)
      return f"(time() - min_over_time(timestamp({series})[{time_range}:])) / 3600"

   def node_utilization(self, hostname: str, window: str = "5m") -> str:
      validate_time_range(window)
      series = selector(self.config.utilization_metric, {self.config.hostname_label: hostname})
      return f"avg_over_time({series}[{window}])"

   @staticmethod
   def range_average_rule(time_range: str) -> str:
      return f"job:gpu_utilization:{validate_time_range(time_range)}_avg"

   @staticmethod
   def underutilized_count_rule(time_range: str) -> str:
      return f"system:underutilized_jobs:{validate_time_range(time_range)}"
