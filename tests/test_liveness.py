"""
Tests for job liveness resolution
"""

from unittest.mock import Mock

from gpu_monitor.config import PrometheusConfig, SlurmConfig
from gpu_monitor.liveness import JobLivenessResolver, RunningJobs
from gpu_monitor.models.job import JobInfo, normalize_job_state
from gpu_monitor.promql import QueryBuilder
from gpu_monitor.slurm_api import SlurmAPIError, SlurmRestClient

from tests.helpers import make_backend, make_slurm, series, vector


QUERIES = QueryBuilder(PrometheusConfig())


class TestJobState:
   """Test Slurm job state handling"""

   def test_state_list_uses_first_entry(self):
      assert normalize_job_state(["RUNNING", "COMPLETING"]) == "RUNNING"

   def test_state_string_upper_cased(self):
      assert normalize_job_state("running") == "RUNNING"

   def test_from_slurm_json(self):
      job = JobInfo.from_slurm_json({
         'job_id': 1234,
         'user_name': 'alice',
         'account': 'physics',
         'job_state': ['RUNNING']
      })

      assert job.job_id == "1234"
      assert job.user_name == "alice"
      assert job.account == "physics"
      assert job.is_running == True


class TestRunningJobs:
   """Test the running-set filter"""

   def test_empty_set_admits_everything(self):
      assert RunningJobs().admits("42") == True

   def test_non_empty_set_filters(self):
      running = RunningJobs(jobs={"42": JobInfo(job_id="42", state="RUNNING")})
      assert running.admits("42") == True
      assert running.admits("43") == False
      assert "42" in running
      assert len(running) == 1


class TestJobLivenessResolver:
   """Test running-job listing and freshness checks"""

   def test_lists_only_running_jobs(self):
      slurm = make_slurm()
      slurm.get_jobs.return_value = [
         JobInfo(job_id="1", state="RUNNING"),
         JobInfo(job_id="2", state="PENDING"),
         JobInfo(job_id="3", state="COMPLETED"),
      ]
      resolver = JobLivenessResolver(slurm, make_backend())

      running = resolver.list_running_jobs()

      assert running.job_ids == {"1"}
      assert running.error is None

   def test_slurm_failure_gives_empty_set(self):
      slurm = make_slurm(error=SlurmAPIError("connection refused"))
      resolver = JobLivenessResolver(slurm, make_backend())

      running = resolver.list_running_jobs()

      assert running.is_empty()
      assert "connection refused" in running.error

   def test_malformed_slurm_body_gives_empty_set(self):
      session = Mock()
      session.get.return_value = Mock(status_code=200, **{'json.return_value': None})
      slurm = SlurmRestClient(SlurmConfig(server="slurmctld"), session=session)

      running = JobLivenessResolver(slurm, make_backend()).list_running_jobs()

      assert running.is_empty()
      assert running.error is not None

   def test_no_slurm_gives_empty_set(self):
      running = JobLivenessResolver(None, make_backend()).list_running_jobs()
      assert running.is_empty()
      assert running.error is not None

   def test_fresh_when_samples_exist(self):
      backend = make_backend({QUERIES.freshness("42", 120): vector(series(10, job="42"))})
      resolver = JobLivenessResolver(None, backend)

      assert resolver.is_fresh("42") == True
      assert resolver.is_fresh("43") == False

   def test_custom_window(self):
      backend = make_backend({QUERIES.freshness("42", 600): vector(series(10, job="42"))})
      resolver = JobLivenessResolver(None, backend)

      assert resolver.is_fresh("42", window=600) == True
      assert resolver.is_fresh("42") == False

   def test_query_failure_counts_as_fresh(self):
      backend = make_backend(failures=[QUERIES.freshness("42", 120)])
      assert JobLivenessResolver(None, backend).is_fresh("42") == True

   def test_check_freshness_many(self):
      backend = make_backend({
         QUERIES.freshness("1", 120): vector(series(10, job="1")),
         QUERIES.freshness("3", 120): vector(series(10, job="3")),
      }, failures=[QUERIES.freshness("2", 120)])
      resolver = JobLivenessResolver(None, backend)

      assert resolver.check_freshness(["1", "2", "3", "4"]) == {
         "1": True, "2": True, "3": True, "4": False
      }
