"""
Slurm REST API client - Interface to the workload manager
"""

import logging
from typing import Dict, List, Any, Optional

import requests

from .config import SlurmConfig
from .models.job import JobInfo


class SlurmAPIError(Exception):
   """Exception raised when a Slurm REST call fails"""

   def __init__(self, message: str, status: Optional[int] = None):
      super().__init__(message)
      self.status = status


class SlurmRestClient:
   """Wrapper for the slurmrestd job endpoints"""

   def __init__(self, config: SlurmConfig, session: Optional[requests.Session] = None):
      self.config = config
      self.session = session or requests.Session()
      self.logger = logging.getLogger(__name__)

   def is_configured(self) -> bool:
      return bool(self.config.server)

   @property
   def base_url(self) -> str:
      return (f"{self.config.protocol}://{self.config.server}:{self.config.port}"
              f"/slurm/{self.config.api_version}")

   def _headers(self) -> Dict[str, str]:
      headers = {'Accept': 'application/json'}
      if self.config.api_account:
         headers['X-SLURM-USER-NAME'] = self.config.api_account
      if self.config.api_token:
         headers['X-SLURM-USER-TOKEN'] = self.config.api_token
      return headers

   def _get(self, path: str) -> Dict[str, Any]:
      if not self.is_configured():
         raise SlurmAPIError("Slurm server is not configured")

      url = f"{self.base_url}/{path.lstrip('/')}"
      self.logger.debug(f"GET {url}")

      try:
         response = self.session.get(url, headers=self._headers(),
                                     timeout=self.config.request_timeout)
      except requests.RequestException as e:
         raise SlurmAPIError(f"Request to {url} failed: {str(e)}") from e

      if response.status_code != 200:
         raise SlurmAPIError(f"Slurm API returned HTTP {response.status_code} for {url}",
                             status=response.status_code)

      try:
         payload = response.json()
      except ValueError as e:
         raise SlurmAPIError(f"Invalid JSON from {url}", status=response.status_code) from e

      if not isinstance(payload, dict):
         raise SlurmAPIError(f"Unexpected response body from {url}", status=response.status_code)
      return payload

   def get_jobs(self) -> List[JobInfo]:
      """
      Get all jobs known to slurmctld

      Returns:
         List of JobInfo objects

      Raises:
         SlurmAPIError: If the request fails
      """
      jobs_data = self._get("jobs").get('jobs') or []
      if not isinstance(jobs_data, list):
         raise SlurmAPIError("Slurm API returned a malformed job listing")

      jobs = []
      for job_data in jobs_data:
         if isinstance(job_data, dict):
            jobs.append(JobInfo.from_slurm_json(job_data))
      return jobs

   def test_connection(self) -> bool:
      """Test whether slurmrestd answers the ping endpoint"""
      try:
         self._get("ping")
         return True
      except SlurmAPIError as e:
         self.logger.debug(f"Slurm connection test failed: {str(e)}")
         return False
