"""
Job liveness resolution against Slurm and recent telemetry
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set

from .config import PrometheusConfig
from .extraction import extract_count
from .metrics_backend import PrometheusQueryClient, MetricsQueryError
from .models.job import JobInfo
from .promql import QueryBuilder
from .slurm_api import SlurmRestClient, SlurmAPIError
from .utils.concurrency import run_concurrently


class FailurePolicy(Enum):
   """What a liveness test answers when its data source is unavailable"""
   INCLUDE_BY_DEFAULT = "include_by_default"
   EXCLUDE_BY_DEFAULT = "exclude_by_default"

   @property
   def default(self) -> bool:
      return self is FailurePolicy.INCLUDE_BY_DEFAULT


# A failed freshness query counts the job as fresh
FRESHNESS_ON_ERROR = FailurePolicy.INCLUDE_BY_DEFAULT

# An empty running set (Slurm unreachable or unconfigured) filters nothing out
RUNNING_SET_ON_ERROR = FailurePolicy.INCLUDE_BY_DEFAULT


@dataclass
class RunningJobs:
   """Snapshot of the jobs Slurm reports as running"""

   jobs: Dict[str, JobInfo] = field(default_factory=dict)
   error: Optional[str] = None

   @property
   def job_ids(self) -> Set[str]:
      return set(self.jobs)

   def is_empty(self) -> bool:
      return not self.jobs

   def admits(self, job_id: str) -> bool:
      """Running-set filter; an empty set admits every job"""
      if self.is_empty():
         return RUNNING_SET_ON_ERROR.default
      return job_id in self.jobs

   def get(self, job_id: str) -> Optional[JobInfo]:
      return self.jobs.get(job_id)

   def __contains__(self, job_id: str) -> bool:
      return job_id in self.jobs

   def __len__(self) -> int:
      return len(self.jobs)


class JobLivenessResolver:
   """Decides which job ids are currently alive"""

   def __init__(self,
                slurm_client: Optional[SlurmRestClient],
                metrics_client: PrometheusQueryClient,
                prometheus_config: Optional[PrometheusConfig] = None,
                freshness_window: int = 120,
                max_workers: int = 8):
      """
      Initialize resolver

      Args:
         slurm_client: Slurm REST client (None when no workload manager is configured)
         metrics_client: Prometheus client used for freshness checks
         prometheus_config: Metric and label names
         freshness_window: Default lookback of the freshness check (seconds)
         max_workers: Thread pool size for concurrent freshness checks
      """
      self.slurm_client = slurm_client
      self.metrics_client = metrics_client
      self.queries = QueryBuilder(prometheus_config or PrometheusConfig())
      self.freshness_window = freshness_window
      self.max_workers = max_workers
      self.logger = logging.getLogger(__name__)

   def list_running_jobs(self) -> RunningJobs:
      """
      Get running jobs from Slurm

      Returns:
         RunningJobs; empty (with `error` set) when Slurm is unconfigured or unreachable
      """
      if self.slurm_client is None or not self.slurm_client.is_configured():
         return RunningJobs(error="Slurm is not configured")

      try:
         jobs = self.slurm_client.get_jobs()
      except SlurmAPIError as e:
         self.logger.warning(f"Failed to list Slurm jobs: {str(e)}")
         return RunningJobs(error=str(e))

      running = {job.job_id: job for job in jobs if job.is_running and job.job_id}
      self.logger.debug(f"Slurm reports {len(running)} running jobs out of {len(jobs)}")
      return RunningJobs(jobs=running)

   def is_fresh(self, job_id: str, window: Optional[int] = None) -> bool:
      """
      Check whether the job emitted utilization samples within the window

      Args:
         job_id: Job to check
         window: Lookback in seconds (default: configured freshness window)

      Returns:
         True when recent samples exist, or when the query fails
      """
      query = self.queries.freshness(job_id, window or self.freshness_window)
      try:
         result = self.metrics_client.instant_query(query)
      except MetricsQueryError as e:
         self.logger.debug(f"Freshness check failed for job {job_id}: {str(e)}")
         return FRESHNESS_ON_ERROR.default

      return extract_count(result) > 0

   def check_freshness(self, job_ids: Iterable[str], window: Optional[int] = None) -> Dict[str, bool]:
      """Run freshness checks for several jobs concurrently"""
      calls = {job_id: (lambda j=job_id: self.is_fresh(j, window)) for job_id in set(job_ids)}
      results, errors = run_concurrently(calls, max_workers=self.max_workers,
                                         expected_errors=(MetricsQueryError,))
      for job_id in errors:
         results[job_id] = FRESHNESS_ON_ERROR.default
      return results
