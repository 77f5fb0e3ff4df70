"""
Dual-path reads of GPU statistics

Reads prefer the recording rules maintained by Prometheus, fall back to
computing statistics from raw DCGM samples, and finally to the stored
aggregates written by the capture cycle.
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Generic, Iterable, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from .aggregator import compute_cycle_metrics, group_device_samples
from .config import Config, PrometheusConfig, ReportConfig
from .database.repositories import JobGPUMetricsRepository
from .extraction import (
   extract_samples, extract_value, extract_count, extract_labeled_values, JOB_LABELS
)
from .liveness import JobLivenessResolver
from .metrics_backend import PrometheusQueryClient, MetricsQueryError
from .models.gpu_stats import (
   StatsSource, JobGPUStats, FleetGPUStats, FleetJobEntry, FleetReport, NodeGPUReading,
   percentile_95, is_underutilized
)
from .models.sample import GPUSample, MetricKind, UNKNOWN, SENTINEL_JOB_IDS
from .promql import (
   QueryBuilder, selector, time_range_to_timedelta, OVERVIEW_QUERIES,
   RULE_JOB_UTIL_AVG, RULE_JOB_UTIL_P95, RULE_JOB_MEMORY_PCT, RULE_JOB_GPU_COUNT,
   RULE_JOB_DURATION, RULE_SYSTEM_WASTED_HOURS
)
from .slurm_api import SlurmRestClient
from .utils.concurrency import run_concurrently


T = TypeVar('T')


class NotConfiguredError(Exception):
   """Raised when neither a metrics backend nor a store is available for a read"""
   pass


class ReadStatus(Enum):
   OK = "ok"
   NOT_FOUND = "not_found"
   NOT_CONFIGURED = "not_configured"
   BACKEND_UNAVAILABLE = "backend_unavailable"


@dataclass
class ReadResult(Generic[T]):
   """Outcome of a read: the data plus the errors met on the way"""

   status: ReadStatus
   data: Optional[T] = None
   errors: List[str] = field(default_factory=list)

   @property
   def ok(self) -> bool:
      return self.status is ReadStatus.OK

   @classmethod
   def found(cls, data: T, errors: List[str]) -> 'ReadResult[T]':
      return cls(ReadStatus.OK, data, errors)

   @classmethod
   def missing(cls, errors: List[str]) -> 'ReadResult[T]':
      """Not found; reported as backend_unavailable when transport errors occurred"""
      status = ReadStatus.BACKEND_UNAVAILABLE if errors else ReadStatus.NOT_FOUND
      return cls(status, None, errors)


@dataclass
class DurationPolicy:
   """
   How long a job is assumed to have held its GPUs

   Measured durations win over stored observation spans; `assumed_hours`
   applies only when neither is known. None means unknown durations count
   as zero wasted GPU-hours.
   """

   assumed_hours: Optional[float] = None

   def resolve(self, measured_hours: Optional[float] = None,
               stored_hours: Optional[float] = None) -> Optional[float]:
      for hours in (measured_hours, stored_hours, self.assumed_hours):
         if hours is not None and hours > 0:
            return hours
      return None


def fleet_memory_percent(mem_used: List[GPUSample], mem_free: List[GPUSample]) -> float:
   """Total used / total framebuffer over devices reporting both halves"""
   free = {s.device_key: s.value for s in mem_free if s.device_key.is_fully_labeled}
   total_used = 0.0
   total = 0.0
   for sample in mem_used:
      key = sample.device_key
      if key.is_fully_labeled and key in free:
         total_used += sample.value
         total += sample.value + free[key]
   return total_used / total * 100.0 if total > 0 else 0.0


class DualPathReader:
   """Reads job and fleet GPU statistics from the best available source"""

   def __init__(self,
                metrics_client: Optional[PrometheusQueryClient],
                resolver: JobLivenessResolver,
                repository: Optional[JobGPUMetricsRepository] = None,
                prometheus_config: Optional[PrometheusConfig] = None,
                report_config: Optional[ReportConfig] = None,
                duration_policy: Optional[DurationPolicy] = None,
                max_workers: int = 8,
                clock=None):
      self.metrics_client = metrics_client
      self.resolver = resolver
      self.repository = repository
      self.queries = QueryBuilder(prometheus_config or PrometheusConfig())
      self.report_config = report_config or ReportConfig()
      self.duration_policy = duration_policy or DurationPolicy(self.report_config.assumed_job_duration_hours)
      self.max_workers = max_workers
      self.clock = clock or (lambda: datetime.now(timezone.utc))
      self.logger = logging.getLogger(__name__)

   @classmethod
   def from_config(cls, config: Config,
                   metrics_client: Optional[PrometheusQueryClient] = None,
                   slurm_client: Optional[SlurmRestClient] = None,
                   repository: Optional[JobGPUMetricsRepository] = None) -> 'DualPathReader':
      metrics_client = metrics_client or PrometheusQueryClient.from_config(config.prometheus)
      if slurm_client is None and config.slurm.server:
         slurm_client = SlurmRestClient(config.slurm)
      resolver = JobLivenessResolver(slurm_client, metrics_client, config.prometheus,
                                     freshness_window=config.capture.freshness_window,
                                     max_workers=config.prometheus.max_workers)
      return cls(metrics_client, resolver, repository,
                 prometheus_config=config.prometheus,
                 report_config=config.report,
                 max_workers=config.prometheus.max_workers)

   # Backend helpers

   def _metrics_available(self) -> bool:
      return self.metrics_client is not None and self.metrics_client.is_configured()

   def _ensure_configured(self) -> None:
      if not self._metrics_available() and self.repository is None:
         raise NotConfiguredError("Neither a metrics backend nor an aggregate store is configured")

   def _query(self, query: str, errors: List[str]) -> Optional[dict]:
      try:
         return self.metrics_client.instant_query(query)
      except MetricsQueryError as e:
         self.logger.warning(str(e))
         errors.append(str(e))
         return None

   def _query_many(self, queries: Dict, errors: List[str]) -> Dict:
      calls = {key: (lambda q=query: self.metrics_client.instant_query(q))
               for key, query in queries.items()}
      results, failures = run_concurrently(calls, max_workers=self.max_workers,
                                           expected_errors=(MetricsQueryError,))
      for key, error in failures.items():
         self.logger.warning(f"Query {key} failed: {str(error)}")
         errors.append(str(error))
      return results

   def _has_recording_rules(self, rule_query: str, errors: List[str]) -> bool:
      result = self._query(rule_query, errors)
      return result is not None and extract_count(result) > 0

   def _raw_samples(self, queries: Dict[MetricKind, str],
                    errors: List[str]) -> Dict[MetricKind, List[GPUSample]]:
      results = self._query_many(queries, errors)
      return {kind: extract_samples(results.get(kind), kind) for kind in queries}

   # Single job

   def read_job(self, job_id: str) -> ReadResult[JobGPUStats]:
      """
      Read GPU statistics for one job

      Args:
         job_id: Slurm job id

      Returns:
         ReadResult with JobGPUStats; `source` tells which path answered
      """
      try:
         self._ensure_configured()
      except NotConfiguredError as e:
         return ReadResult(ReadStatus.NOT_CONFIGURED, errors=[str(e)])

      errors: List[str] = []

      if self._metrics_available():
         if self._has_recording_rules(self.queries.job_rule(RULE_JOB_UTIL_AVG, job_id), errors):
            return ReadResult.found(self._read_job_precomputed(job_id, errors), errors)

         stats = self._read_job_direct(job_id, errors)
         if stats is not None:
            return ReadResult.found(stats, errors)

      stats = self._read_job_stored(job_id, errors)
      if stats is not None:
         return ReadResult.found(stats, errors)

      return ReadResult.missing(errors)

   def _read_job_precomputed(self, job_id: str, errors: List[str]) -> JobGPUStats:
      rules = {
         'avg': RULE_JOB_UTIL_AVG,
         'p95': RULE_JOB_UTIL_P95,
         'memory': RULE_JOB_MEMORY_PCT,
         'gpu_count': RULE_JOB_GPU_COUNT,
      }
      results = self._query_many({key: self.queries.job_rule(rule, job_id)
                                  for key, rule in rules.items()}, errors)

      avg = extract_value(results.get('avg'))
      avg = avg if avg is not None else 0.0
      p95 = extract_value(results.get('p95'))
      memory = extract_value(results.get('memory'))
      gpu_count = extract_value(results.get('gpu_count'))

      return JobGPUStats(
         job_id=job_id,
         avg_utilization=avg,
         p95_utilization=p95 if p95 is not None else avg,
         memory_pct=memory if memory is not None else 0.0,
         gpu_count=int(gpu_count) if gpu_count is not None else 1,
         source=StatsSource.PRECOMPUTED
      )

   def _read_job_direct(self, job_id: str, errors: List[str]) -> Optional[JobGPUStats]:
      samples = self._raw_samples({
         MetricKind.UTILIZATION: self.queries.job_utilization(job_id),
         MetricKind.MEMORY_USED: self.queries.job_memory_used(job_id),
         MetricKind.MEMORY_FREE: self.queries.job_memory_free(job_id),
      }, errors)

      util = [s for s in samples[MetricKind.UTILIZATION] if s.job_id == job_id]
      if not util:
         return None

      running = self.resolver.list_running_jobs()
      if not (job_id in running or running.is_empty() or self.resolver.is_fresh(job_id)):
         self.logger.debug(f"Job {job_id} has samples but is neither running nor fresh")
         return None

      metrics = compute_cycle_metrics(util, samples[MetricKind.MEMORY_USED],
                                      samples[MetricKind.MEMORY_FREE]).get(job_id)
      if metrics is None:
         return None

      devices = group_device_samples(util).get(job_id, [])
      info = running.get(job_id)

      return JobGPUStats(
         job_id=job_id,
         avg_utilization=metrics.avg_utilization,
         p95_utilization=percentile_95([s.value for s in devices]),
         memory_pct=metrics.avg_memory_pct,
         gpu_count=metrics.gpu_count,
         source=StatsSource.DIRECT,
         user_name=info.user_name if info else None,
         account=info.account if info else None
      )

   def _read_job_stored(self, job_id: str, errors: List[str]) -> Optional[JobGPUStats]:
      if self.repository is None:
         return None

      try:
         row = self.repository.get_job_metrics(job_id)
      except SQLAlchemyError as e:
         self.logger.error(f"Failed to read stored metrics for job {job_id}: {str(e)}")
         errors.append(str(e))
         return None

      if row is None:
         return None

      # The stored maximum stands in for the 95th percentile
      return JobGPUStats(
         job_id=row.job_id,
         avg_utilization=row.avg_utilization,
         p95_utilization=row.max_utilization,
         memory_pct=row.avg_memory_pct,
         gpu_count=row.gpu_count,
         source=StatsSource.STORED,
         is_complete=bool(row.is_complete)
      )

   # Fleet overview

   def read_overview(self, since: Optional[datetime] = None,
                     until: Optional[datetime] = None) -> ReadResult[FleetGPUStats]:
      """
      Read fleet-wide GPU statistics

      Args:
         since: Start of the window used by the stored fallback
         until: End of the window used by the stored fallback

      Returns:
         ReadResult with FleetGPUStats
      """
      try:
         self._ensure_configured()
      except NotConfiguredError as e:
         return ReadResult(ReadStatus.NOT_CONFIGURED, errors=[str(e)])

      errors: List[str] = []

      if self._metrics_available():
         if self._has_recording_rules(RULE_JOB_UTIL_AVG, errors):
            return ReadResult.found(self._read_overview_precomputed(errors), errors)

         stats = self._read_overview_direct(errors)
         if stats is not None:
            return ReadResult.found(stats, errors)

      stats = self._read_overview_stored(since, until, errors)
      if stats is not None:
         return ReadResult.found(stats, errors)

      return ReadResult.missing(errors)

   def _read_overview_precomputed(self, errors: List[str]) -> FleetGPUStats:
      results = self._query_many(OVERVIEW_QUERIES, errors)

      def value(key: str) -> float:
         extracted = extract_value(results.get(key))
         return extracted if extracted is not None else 0.0

      return FleetGPUStats(
         avg_utilization=value('avg_utilization'),
         p95_utilization=value('p95_utilization'),
         memory_utilization=value('memory_utilization'),
         total_gpus=int(value('total_gpus')),
         active_jobs=int(value('active_jobs')),
         underutilized_jobs=int(value('underutilized_jobs')),
         source=StatsSource.PRECOMPUTED
      )

   def _read_overview_direct(self, errors: List[str]) -> Optional[FleetGPUStats]:
      samples = self._raw_samples({
         MetricKind.UTILIZATION: self.queries.utilization(),
         MetricKind.MEMORY_USED: self.queries.memory_used(),
         MetricKind.MEMORY_FREE: self.queries.memory_free(),
      }, errors)

      if not samples[MetricKind.UTILIZATION]:
         return None

      running = self.resolver.list_running_jobs()
      admitted = {kind: [s for s in kind_samples if running.admits(s.job_id)]
                  for kind, kind_samples in samples.items()}

      metrics = compute_cycle_metrics(admitted[MetricKind.UTILIZATION],
                                      admitted[MetricKind.MEMORY_USED],
                                      admitted[MetricKind.MEMORY_FREE])
      if not metrics:
         return None

      device_values = [s.value
                       for devices in group_device_samples(admitted[MetricKind.UTILIZATION]).values()
                       for s in devices]

      return FleetGPUStats(
         avg_utilization=sum(device_values) / len(device_values),
         p95_utilization=percentile_95(device_values),
         memory_utilization=fleet_memory_percent(admitted[MetricKind.MEMORY_USED],
                                                 admitted[MetricKind.MEMORY_FREE]),
         total_gpus=len(device_values),
         active_jobs=len(metrics),
         underutilized_jobs=sum(1 for m in metrics.values() if is_underutilized(m.avg_utilization)),
         source=StatsSource.DIRECT
      )

   def _read_overview_stored(self, since: Optional[datetime], until: Optional[datetime],
                             errors: List[str]) -> Optional[FleetGPUStats]:
      if self.repository is None:
         return None

      try:
         rows = self.repository.get_metrics_in_window(since, until)
      except SQLAlchemyError as e:
         self.logger.error(f"Failed to read stored metrics: {str(e)}")
         errors.append(str(e))
         return None

      if not rows:
         return None

      averages = [row.avg_utilization for row in rows]
      return FleetGPUStats(
         avg_utilization=sum(averages) / len(averages),
         p95_utilization=percentile_95(averages),
         memory_utilization=sum(row.avg_memory_pct for row in rows) / len(rows),
         total_gpus=sum(row.gpu_count for row in rows),
         active_jobs=len(rows),
         underutilized_jobs=sum(1 for avg in averages if is_underutilized(avg)),
         source=StatsSource.STORED
      )

   # Fleet report

   def read_fleet_report(self, time_range: Optional[str] = None,
                         job_id: Optional[str] = None) -> ReadResult[FleetReport]:
      """
      Per-job utilization report with wasted GPU-hours

      Args:
         time_range: PromQL duration such as 24h or 7d (default: report.default_time_range)
         job_id: Restrict the report to one job

      Raises:
         ValueError: If time_range is not a valid duration
      """
      time_range = time_range or self.report_config.default_time_range
      time_range_to_timedelta(time_range)

      try:
         self._ensure_configured()
      except NotConfiguredError as e:
         return ReadResult(ReadStatus.NOT_CONFIGURED, errors=[str(e)])

      errors: List[str] = []

      if self._metrics_available():
         rule_query = self.queries.job_rule(RULE_JOB_UTIL_AVG, job_id) if job_id else RULE_JOB_UTIL_AVG
         if self._has_recording_rules(rule_query, errors):
            report = self._report_precomputed(time_range, job_id, errors)
            if job_id and not report.jobs:
               return ReadResult.missing(errors)
            return ReadResult.found(report, errors)

         report = self._report_direct(time_range, job_id, errors)
         if report is not None:
            return ReadResult.found(report, errors)

      report = self._report_stored(time_range, job_id, errors)
      if report is not None:
         return ReadResult.found(report, errors)

      return ReadResult.missing(errors)

   def _report_precomputed(self, time_range: str, job_id: Optional[str],
                           errors: List[str]) -> FleetReport:
      matchers = {self.queries.config.job_label: job_id} if job_id else None
      queries = {
         'range_avg': selector(QueryBuilder.range_average_rule(time_range), matchers),
         'current_avg': selector(RULE_JOB_UTIL_AVG, matchers),
         'gpu_count': selector(RULE_JOB_GPU_COUNT, matchers),
         'duration': selector(RULE_JOB_DURATION, matchers),
      }
      if not job_id:
         queries['underutilized'] = QueryBuilder.underutilized_count_rule(time_range)
         queries['wasted'] = RULE_SYSTEM_WASTED_HOURS

      results = self._query_many(queries, errors)
      running = self.resolver.list_running_jobs()

      averages = extract_labeled_values(results.get('current_avg'), JOB_LABELS)
      averages.update(extract_labeled_values(results.get('range_avg'), JOB_LABELS))
      gpu_counts = extract_labeled_values(results.get('gpu_count'), JOB_LABELS)
      durations = extract_labeled_values(results.get('duration'), JOB_LABELS)

      entries = []
      for jid in sorted(averages):
         if jid in SENTINEL_JOB_IDS or not running.admits(jid):
            continue
         info = running.get(jid)
         entries.append(FleetJobEntry(
            job_id=jid,
            avg_utilization=averages[jid],
            gpu_count=int(gpu_counts.get(jid, 1)),
            user_name=info.user_name if info else None,
            account=info.account if info else None,
            duration_hours=durations[jid] / 3600.0 if jid in durations else None
         ))

      self._assign_durations(entries, {e.job_id: e.duration_hours for e in entries}, errors)

      underutilized_count = None
      underutilized_ids = extract_labeled_values(results.get('underutilized'), JOB_LABELS)
      if underutilized_ids:
         admitted = {e.job_id for e in entries}
         underutilized_count = len(admitted & set(underutilized_ids))

      return FleetReport(
         jobs=entries,
         source=StatsSource.PRECOMPUTED,
         time_range=time_range,
         underutilized_job_count=underutilized_count,
         total_wasted_gpu_hours=extract_value(results.get('wasted'))
      )

   def _report_direct(self, time_range: str, job_id: Optional[str],
                      errors: List[str]) -> Optional[FleetReport]:
      query = self.queries.job_utilization(job_id) if job_id else self.queries.utilization()
      util = extract_samples(self._query(query, errors), MetricKind.UTILIZATION)
      if job_id:
         util = [s for s in util if s.job_id == job_id]
      if not util:
         return None

      grouped = group_device_samples(util)
      running = self.resolver.list_running_jobs()
      freshness = self.resolver.check_freshness(grouped.keys())
      fresh = {jid for jid, is_fresh in freshness.items() if is_fresh}
      use_all = not fresh and running.is_empty()

      entries = []
      for jid in sorted(grouped):
         if not (use_all or jid in fresh or jid in running):
            continue
         devices = grouped[jid]
         values = [s.value for s in devices]
         hostnames = sorted({s.hostname for s in devices if s.hostname != UNKNOWN})
         models = [s.device_model for s in devices if s.device_model != UNKNOWN]
         info = running.get(jid)
         entries.append(FleetJobEntry(
            job_id=jid,
            avg_utilization=sum(values) / len(values),
            gpu_count=len(devices),
            user_name=info.user_name if info else None,
            account=info.account if info else None,
            node_names=hostnames,
            gpu_model=models[0] if models else None
         ))

      if not entries:
         return None

      measured = self._measure_durations([e.job_id for e in entries], time_range, errors)
      self._assign_durations(entries, measured, errors)
      return FleetReport(jobs=entries, source=StatsSource.DIRECT, time_range=time_range)

   def _report_stored(self, time_range: str, job_id: Optional[str],
                      errors: List[str]) -> Optional[FleetReport]:
      if self.repository is None:
         return None

      try:
         if job_id:
            row = self.repository.get_job_metrics(job_id)
            rows = [row] if row is not None else []
         else:
            since = self.clock() - time_range_to_timedelta(time_range)
            rows = self.repository.get_metrics_in_window(since=since)
      except SQLAlchemyError as e:
         self.logger.error(f"Failed to read stored metrics: {str(e)}")
         errors.append(str(e))
         return None

      if not rows:
         return None

      entries = [FleetJobEntry(
         job_id=row.job_id,
         avg_utilization=row.avg_utilization,
         gpu_count=row.gpu_count,
         duration_hours=self.duration_policy.resolve(None, row.observed_hours())
      ) for row in rows]
      return FleetReport(jobs=entries, source=StatsSource.STORED, time_range=time_range)

   def _measure_durations(self, job_ids: Iterable[str], time_range: str,
                          errors: List[str]) -> Dict[str, Optional[float]]:
      queries = {jid: self.queries.job_duration_hours(jid, time_range) for jid in job_ids}
      results = self._query_many(queries, errors)
      return {jid: extract_value(results.get(jid)) for jid in queries}

   def _assign_durations(self, entries: List[FleetJobEntry],
                         measured: Dict[str, Optional[float]], errors: List[str]) -> None:
      unmeasured = [e.job_id for e in entries if not measured.get(e.job_id)]
      stored: Dict[str, float] = {}
      if unmeasured and self.repository is not None:
         try:
            stored = {jid: row.observed_hours()
                      for jid, row in self.repository.get_metrics_for_jobs(unmeasured).items()}
         except SQLAlchemyError as e:
            self.logger.error(f"Failed to read stored durations: {str(e)}")
            errors.append(str(e))

      for entry in entries:
         entry.duration_hours = self.duration_policy.resolve(measured.get(entry.job_id),
                                                             stored.get(entry.job_id))

   # Node readout

   def read_node(self, hostname: str) -> ReadResult[List[NodeGPUReading]]:
      """
      Five-minute average utilization of every GPU on one host

      Idle devices (no job assigned) are included with job_id None.
      """
      if not self._metrics_available():
         return ReadResult(ReadStatus.NOT_CONFIGURED, errors=["Prometheus is not configured"])

      errors: List[str] = []
      result = self._query(self.queries.node_utilization(hostname), errors)
      samples = extract_samples(result, MetricKind.UTILIZATION, include_unassigned=True)
      if not samples:
         return ReadResult.missing(errors)

      readings = [NodeGPUReading(
         hostname=s.hostname if s.hostname != UNKNOWN else hostname,
         device=s.device,
         utilization=s.value,
         device_model=s.device_model if s.device_model != UNKNOWN else None,
         job_id=s.job_id if s.is_assigned else None
      ) for s in samples]
      readings.sort(key=lambda r: (len(r.device), r.device))
      return ReadResult.found(readings, errors)
