"""
Tests for dual-path reads of job and fleet statistics
"""

import pytest
from datetime import timedelta

from gpu_monitor.config import PrometheusConfig, ReportConfig
from gpu_monitor.liveness import JobLivenessResolver
from gpu_monitor.metrics_backend import MetricsQueryError
from gpu_monitor.models.gpu_stats import CycleJobMetrics, StatsSource
from gpu_monitor.promql import (
   QueryBuilder, OVERVIEW_QUERIES, selector, RULE_JOB_UTIL_AVG, RULE_JOB_UTIL_P95,
   RULE_JOB_MEMORY_PCT, RULE_JOB_GPU_COUNT, RULE_JOB_DURATION, RULE_SYSTEM_WASTED_HOURS
)
from gpu_monitor.reader import DualPathReader, DurationPolicy, ReadStatus

from tests.helpers import T0, FakeClock, make_backend, make_slurm, series, vector


QUERIES = QueryBuilder(PrometheusConfig())


def value_vector(value):
   """Aggregation result without labels"""
   return vector({'metric': {}, 'value': [T0.timestamp(), str(value)]})


def rule_vector(*pairs):
   """Recording-rule result with one series per job"""
   return vector(*[{'metric': {'hpc_job': job}, 'value': [T0.timestamp(), str(value)]}
                   for job, value in pairs])


def build_reader(backend, slurm=None, repository=None, report_config=None):
   resolver = JobLivenessResolver(slurm, backend)
   return DualPathReader(backend, resolver, repository,
                         report_config=report_config, clock=FakeClock())


def store(repository, job_id, avg, maximum, gpus=1, now=T0):
   repository.upsert_cycle_metrics(
      CycleJobMetrics(job_id, avg, maximum, avg, 10.0, 10.0, gpus), now=now
   )


class TestDurationPolicy:
   """Test duration resolution order"""

   def test_measured_wins(self):
      assert DurationPolicy(5.0).resolve(2.0, 3.0) == 2.0

   def test_stored_then_assumed(self):
      assert DurationPolicy(5.0).resolve(None, 3.0) == 3.0
      assert DurationPolicy(5.0).resolve(None, 0.0) == 5.0

   def test_unknown_without_assumption(self):
      assert DurationPolicy().resolve(None, None) is None


class TestReadJob:
   """Test single-job reads"""

   def test_precomputed_path(self):
      backend = make_backend({
         QUERIES.job_rule(RULE_JOB_UTIL_AVG, "42"): rule_vector(("42", 55)),
         QUERIES.job_rule(RULE_JOB_UTIL_P95, "42"): rule_vector(("42", 70)),
         QUERIES.job_rule(RULE_JOB_MEMORY_PCT, "42"): rule_vector(("42", 40)),
         QUERIES.job_rule(RULE_JOB_GPU_COUNT, "42"): rule_vector(("42", 4)),
      })

      result = build_reader(backend).read_job("42")

      assert result.ok
      stats = result.data
      assert stats.source == StatsSource.PRECOMPUTED
      assert stats.avg_utilization == 55.0
      assert stats.p95_utilization == 70.0
      assert stats.memory_pct == 40.0
      assert stats.gpu_count == 4

   def test_precomputed_wins_over_raw_samples(self):
      backend = make_backend({
         QUERIES.job_rule(RULE_JOB_UTIL_AVG, "42"): rule_vector(("42", 55)),
         QUERIES.job_utilization("42"): vector(series(90, job="42", gpu="0"),
                                                series(10, job="42", gpu="1")),
      })

      result = build_reader(backend, slurm=make_slurm(running=["42"])).read_job("42")

      assert result.data.source == StatsSource.PRECOMPUTED
      assert result.data.avg_utilization == 55.0

   def test_direct_path_for_running_job(self):
      backend = make_backend({
         QUERIES.job_utilization("42"): vector(series(80, job="42", gpu="0"),
                                                series(40, job="42", gpu="1")),
      })

      result = build_reader(backend, slurm=make_slurm(running=["42"])).read_job("42")

      stats = result.data
      assert stats.source == StatsSource.DIRECT
      assert stats.avg_utilization == 60.0
      assert stats.p95_utilization == 80.0
      assert stats.gpu_count == 2
      assert stats.user_name == "user42"
      assert stats.to_dict()['userName'] == "user42"

   def test_direct_path_for_fresh_job(self):
      backend = make_backend({
         QUERIES.job_utilization("42"): vector(series(50, job="42")),
         QUERIES.freshness("42", 120): vector(series(50, job="42")),
      })

      result = build_reader(backend, slurm=make_slurm(running=["7"])).read_job("42")

      assert result.data.source == StatsSource.DIRECT

   def test_direct_path_with_empty_running_set(self):
      backend = make_backend({QUERIES.job_utilization("42"): vector(series(50, job="42"))})

      result = build_reader(backend, slurm=None).read_job("42")

      assert result.data.source == StatsSource.DIRECT

   def test_stale_job_falls_back_to_store(self, repository):
      store(repository, "42", 20.0, 35.0, gpus=2)
      backend = make_backend({QUERIES.job_utilization("42"): vector(series(50, job="42"))})

      result = build_reader(backend, slurm=make_slurm(running=["7"]),
                            repository=repository).read_job("42")

      stats = result.data
      assert stats.source == StatsSource.STORED
      assert stats.avg_utilization == 20.0
      # Stored maximum stands in for the 95th percentile
      assert stats.p95_utilization == 35.0
      assert stats.gpu_count == 2
      assert stats.is_complete == False
      assert stats.is_underutilized == True

   def test_completed_job_read_from_store(self, repository):
      store(repository, "42", 20.0, 35.0)
      assert repository.mark_stale_complete([], T0 + timedelta(minutes=11)) == 1

      result = build_reader(make_backend(), repository=repository).read_job("42")

      assert result.ok
      assert result.data.source == StatsSource.STORED
      assert result.data.is_complete == True
      assert result.data.to_dict()['isComplete'] == True

   def test_store_used_when_backend_down(self, repository):
      store(repository, "42", 20.0, 35.0)
      backend = make_backend(failures=[QUERIES.job_rule(RULE_JOB_UTIL_AVG, "42"),
                                       QUERIES.job_utilization("42")])

      result = build_reader(backend, repository=repository).read_job("42")

      assert result.ok
      assert result.data.source == StatsSource.STORED
      assert len(result.errors) >= 1

   def test_not_configured(self):
      backend = make_backend()
      backend.is_configured.return_value = False

      result = build_reader(backend).read_job("42")

      assert result.status == ReadStatus.NOT_CONFIGURED
      backend.instant_query.assert_not_called()

   def test_backend_unavailable(self):
      backend = make_backend()
      backend.instant_query.side_effect = MetricsQueryError("connection refused")

      result = build_reader(backend).read_job("42")

      assert result.status == ReadStatus.BACKEND_UNAVAILABLE
      assert result.errors

   def test_not_found(self):
      result = build_reader(make_backend()).read_job("42")
      assert result.status == ReadStatus.NOT_FOUND
      assert result.data is None


class TestReadOverview:
   """Test fleet overview reads"""

   def test_precomputed_overview(self):
      responses = {query: value_vector(0) for query in OVERVIEW_QUERIES.values()}
      responses.update({
         RULE_JOB_UTIL_AVG: rule_vector(("1", 50)),
         OVERVIEW_QUERIES['avg_utilization']: value_vector(45.5),
         OVERVIEW_QUERIES['total_gpus']: value_vector(16),
         OVERVIEW_QUERIES['active_jobs']: value_vector(5),
         OVERVIEW_QUERIES['underutilized_jobs']: value_vector(2),
      })

      stats = build_reader(make_backend(responses)).read_overview().data

      assert stats.source == StatsSource.PRECOMPUTED
      assert stats.avg_utilization == 45.5
      assert stats.total_gpus == 16
      assert stats.active_jobs == 5
      assert stats.underutilized_jobs == 2

   def test_direct_overview_filters_running(self):
      backend = make_backend({
         QUERIES.utilization(): vector(
            series(10, job="1", gpu="0"), series(20, job="1", gpu="1"),
            series(90, job="2", host="node-b"),
            series(100, job="3", host="node-c")
         ),
         QUERIES.memory_used(): vector(series(30, job="1", gpu="0"), series(10, job="2", host="node-b")),
         QUERIES.memory_free(): vector(series(10, job="1", gpu="0"), series(30, job="2", host="node-b")),
      })

      stats = build_reader(backend, slurm=make_slurm(running=["1", "2"])).read_overview().data

      assert stats.source == StatsSource.DIRECT
      assert stats.avg_utilization == pytest.approx(40.0)
      assert stats.p95_utilization == 90.0
      assert stats.total_gpus == 3
      assert stats.active_jobs == 2
      assert stats.underutilized_jobs == 1
      assert stats.memory_utilization == pytest.approx(50.0)

   def test_stored_overview_uses_active_rows(self, repository):
      store(repository, "1", 20.0, 30.0, gpus=2)
      store(repository, "2", 60.0, 70.0, gpus=1)
      repository.mark_stale_complete(["1"], T0 + timedelta(minutes=1))

      backend = make_backend()
      backend.is_configured.return_value = False
      stats = build_reader(backend, repository=repository).read_overview().data

      assert stats.source == StatsSource.STORED
      assert stats.active_jobs == 1
      assert stats.avg_utilization == 20.0
      assert stats.total_gpus == 2

   def test_stored_overview_with_window(self, repository):
      store(repository, "1", 20.0, 30.0)
      store(repository, "2", 60.0, 70.0)
      repository.mark_stale_complete(["1"], T0 + timedelta(minutes=1))

      backend = make_backend()
      backend.is_configured.return_value = False
      stats = build_reader(backend, repository=repository).read_overview(
         since=T0 - timedelta(hours=1), until=T0 + timedelta(hours=1)
      ).data

      assert stats.active_jobs == 2
      assert stats.avg_utilization == 40.0


class TestFleetReport:
   """Test the per-job utilization report"""

   def test_invalid_time_range(self):
      with pytest.raises(ValueError):
         build_reader(make_backend()).read_fleet_report(time_range="yesterday")

   def test_direct_report_with_wasted_hours(self):
      backend = make_backend({
         QUERIES.utilization(): vector(series(20, job="1", host="node-a"),
                                       series(20, job="1", host="node-b"),
                                       series(90, job="2", host="node-c")),
         QUERIES.job_duration_hours("1", "24h"): value_vector(2.0),
      })

      report = build_reader(backend, slurm=make_slurm(running=["1"])).read_fleet_report("24h").data

      assert report.source == StatsSource.DIRECT
      assert [job.job_id for job in report.jobs] == ["1"]
      job = report.jobs[0]
      assert job.gpu_count == 2
      assert job.node_names == ["node-a", "node-b"]
      assert job.gpu_model == "NVIDIA A100"
      assert job.duration_hours == 2.0
      assert job.wasted_gpu_hours == pytest.approx(3.2)
      assert report.underutilized_job_count == 1
      assert report.to_dict()['systemMetrics']['totalJobs'] == 1

   def test_direct_report_uses_all_jobs_without_liveness(self):
      backend = make_backend({
         QUERIES.utilization(): vector(series(20, job="1"), series(90, job="2", host="node-b")),
      })

      report = build_reader(backend).read_fleet_report("24h").data

      assert {job.job_id for job in report.jobs} == {"1", "2"}
      # Unknown durations contribute nothing
      assert report.total_wasted_gpu_hours == 0.0

   def test_assumed_duration(self):
      backend = make_backend({QUERIES.utilization(): vector(series(50, job="1"))})
      reader = build_reader(backend, report_config=ReportConfig(assumed_job_duration_hours=4.0))

      report = reader.read_fleet_report("24h").data

      assert report.jobs[0].duration_hours == 4.0
      assert report.jobs[0].wasted_gpu_hours == pytest.approx(2.0)

   def test_precomputed_report(self):
      backend = make_backend({
         RULE_JOB_UTIL_AVG: rule_vector(("1", 25), ("2", 80)),
         selector(QueryBuilder.range_average_rule("24h")): rule_vector(("1", 20), ("2", 85)),
         RULE_JOB_GPU_COUNT: rule_vector(("1", 4), ("2", 1)),
         RULE_JOB_DURATION: rule_vector(("1", 7200)),
         QueryBuilder.underutilized_count_rule("24h"): rule_vector(("1", 1)),
         RULE_SYSTEM_WASTED_HOURS: value_vector(123.0),
      })

      report = build_reader(backend).read_fleet_report("24h").data

      assert report.source == StatsSource.PRECOMPUTED
      jobs = {job.job_id: job for job in report.jobs}
      assert jobs["1"].avg_utilization == 20.0
      assert jobs["1"].gpu_count == 4
      assert jobs["1"].duration_hours == 2.0
      assert jobs["2"].avg_utilization == 85.0
      assert report.underutilized_job_count == 1
      assert report.total_wasted_gpu_hours == 123.0

   def test_stored_report(self, repository):
      store(repository, "1", 20.0, 30.0, gpus=2)
      store(repository, "1", 20.0, 30.0, gpus=2, now=T0 + timedelta(hours=1))

      backend = make_backend()
      backend.is_configured.return_value = False
      reader = DualPathReader(backend, JobLivenessResolver(None, backend), repository,
                              clock=FakeClock(T0 + timedelta(hours=1)))

      report = reader.read_fleet_report("24h").data

      assert report.source == StatsSource.STORED
      assert report.jobs[0].duration_hours == pytest.approx(1.0)
      assert report.jobs[0].wasted_gpu_hours == pytest.approx(1.6)

   def test_unknown_job(self):
      result = build_reader(make_backend()).read_fleet_report("24h", job_id="99")
      assert result.status == ReadStatus.NOT_FOUND


class TestReadNode:
   """Test per-node readout"""

   def test_node_includes_idle_devices(self):
      backend = make_backend({
         QUERIES.node_utilization("node-a"): vector(series(5, job="0", gpu="1"),
                                                    series(75, job="42", gpu="0"))
      })

      readings = build_reader(backend).read_node("node-a").data

      assert [r.device for r in readings] == ["0", "1"]
      assert readings[0].job_id == "42"
      assert readings[1].job_id is None
      assert readings[1].utilization == 5.0

   def test_node_requires_backend(self, repository):
      backend = make_backend()
      backend.is_configured.return_value = False

      result = build_reader(backend, repository=repository).read_node("node-a")

      assert result.status == ReadStatus.NOT_CONFIGURED
