"""
Prometheus HTTP API client - Interface to the metrics backend
"""

import logging
from typing import Dict, Any, Optional

import requests

from .config import PrometheusConfig


class MetricsQueryError(Exception):
   """Exception raised when a metrics backend query fails"""

   def __init__(self, message: str, query: Optional[str] = None):
      super().__init__(message)
      self.query = query


class PrometheusQueryClient:
   """Wrapper for the Prometheus instant query API"""

   def __init__(self, url: Optional[str] = None, timeout: int = 10,
                session: Optional[requests.Session] = None):
      """
      Initialize Prometheus client

      Args:
         url: Base URL of the Prometheus server
         timeout: Per-request timeout in seconds
         session: requests session to reuse (optional)
      """
      self.url = url.rstrip('/') if url else None
      self.timeout = timeout
      self.session = session or requests.Session()
      self.logger = logging.getLogger(__name__)

   @classmethod
   def from_config(cls, config: PrometheusConfig) -> 'PrometheusQueryClient':
      return cls(url=config.url, timeout=config.query_timeout)

   def is_configured(self) -> bool:
      return bool(self.url)

   def instant_query(self, query: str) -> Dict[str, Any]:
      """
      Execute an instant query

      Args:
         query: PromQL expression

      Returns:
         The `data` member of the response: {"resultType": ..., "result": ...}

      Raises:
         MetricsQueryError: If the backend is not configured, unreachable,
            or answers with a non-success status
      """
      if not self.is_configured():
         raise MetricsQueryError("Prometheus URL is not configured", query)

      endpoint = f"{self.url}/api/v1/query"
      self.logger.debug(f"Executing query: {query}")

      try:
         response = self.session.get(endpoint, params={'query': query}, timeout=self.timeout)
      except requests.Timeout as e:
         raise MetricsQueryError(f"Query timed out after {self.timeout}s: {query}", query) from e
      except requests.RequestException as e:
         raise MetricsQueryError(f"Query failed: {str(e)}", query) from e

      try:
         payload = response.json()
      except ValueError as e:
         raise MetricsQueryError(
            f"Invalid response (HTTP {response.status_code}) for query: {query}", query
         ) from e

      if not isinstance(payload, dict):
         raise MetricsQueryError(
            f"Unexpected response body (HTTP {response.status_code}) for query: {query}", query
         )

      if response.status_code != 200 or payload.get('status') != 'success':
         error = payload.get('error') or f"HTTP {response.status_code}"
         raise MetricsQueryError(f"Query rejected: {error}", query)

      data = payload.get('data')
      if not isinstance(data, dict):
         raise MetricsQueryError(f"Response without data for query: {query}", query)

      return data

   def test_connection(self) -> bool:
      """Test whether the backend answers a trivial query"""
      try:
         self.instant_query("vector(1)")
         return True
      except MetricsQueryError as e:
         self.logger.debug(f"Prometheus connection test failed: {str(e)}")
         return False
