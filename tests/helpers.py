"""
Test doubles shared by the GPU Monitor test modules
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from gpu_monitor.metrics_backend import MetricsQueryError
from gpu_monitor.models.job import JobInfo


T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def series(value, job=None, host="node-a", gpu="0", model="NVIDIA A100", **extra):
   """One vector series with DCGM-style labels"""
   labels = {'Hostname': host, 'gpu': gpu, 'modelName': model}
   if job is not None:
      labels['hpc_job'] = job
   labels.update(extra)
   return {'metric': labels, 'value': [T0.timestamp(), str(value)]}


def vector(*items):
   """Instant-query data payload"""
   return {'resultType': 'vector', 'result': list(items)}


def scalar(value):
   return {'resultType': 'scalar', 'result': [T0.timestamp(), str(value)]}


EMPTY = vector()


class FakeClock:
   """Injectable clock that only moves when told to"""

   def __init__(self, start=T0):
      self.now = start

   def __call__(self):
      return self.now

   def advance(self, **kwargs):
      self.now += timedelta(**kwargs)


def make_backend(responses=None, failures=()):
   """
   Mock Prometheus client

   Args:
      responses: Query string to data payload; unknown queries answer an empty vector
      failures: Query strings that raise MetricsQueryError
   """
   responses = dict(responses or {})
   failures = set(failures)

   def answer(query):
      if query in failures:
         raise MetricsQueryError("connection refused", query)
      return responses.get(query, EMPTY)

   client = Mock()
   client.is_configured.return_value = True
   client.instant_query.side_effect = answer
   return client


def make_slurm(running=(), error=None):
   """Mock Slurm client reporting the given job ids as running"""
   client = Mock()
   client.is_configured.return_value = True
   if error is not None:
      client.get_jobs.side_effect = error
   else:
      client.get_jobs.return_value = [
         JobInfo(job_id=job_id, user_name=f"user{job_id}", account="proj", state="RUNNING")
         for job_id in running
      ]
   return client
