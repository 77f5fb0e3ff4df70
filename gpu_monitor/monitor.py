"""
GPU Monitor service - wires the metrics backend, Slurm and the aggregate store
"""

import logging
from typing import Dict, Optional

from .aggregator import RollingAggregator
from .config import Config
from .database.migrations import DatabaseMigration
from .database.repositories import RepositoryFactory, JobGPUMetricsRepository
from .metrics_backend import PrometheusQueryClient
from .models.gpu_stats import CaptureResult
from .reader import DualPathReader
from .slurm_api import SlurmRestClient


class GPUMonitor:
   """Builds and holds the engine components for one process"""

   def __init__(self, config: Optional[Config] = None, enable_database: bool = True):
      """
      Initialize GPU monitor

      Args:
         config: Configuration object
         enable_database: Enable the aggregate store
      """
      self.config = config or Config()
      self.logger = logging.getLogger(__name__)

      self.metrics_client = PrometheusQueryClient.from_config(self.config.prometheus)
      self.slurm_client = SlurmRestClient(self.config.slurm) if self.config.slurm.server else None

      if enable_database:
         self._repository_factory: Optional[RepositoryFactory] = RepositoryFactory(self.config)
         self._repository: Optional[JobGPUMetricsRepository] = \
            self._repository_factory.get_job_gpu_metrics_repository()
      else:
         self._repository_factory = None
         self._repository = None

      self.reader = DualPathReader.from_config(self.config, self.metrics_client,
                                               self.slurm_client, self._repository)
      self._aggregator: Optional[RollingAggregator] = None
      self._schema_ready = False

   @property
   def database_enabled(self) -> bool:
      return self._repository is not None

   @property
   def repository_factory(self) -> Optional[RepositoryFactory]:
      return self._repository_factory

   @property
   def aggregator(self) -> RollingAggregator:
      if self._aggregator is None:
         self._aggregator = RollingAggregator.from_config(self.config, self.metrics_client,
                                                          self._repository)
      return self._aggregator

   def test_connections(self) -> Dict[str, Optional[bool]]:
      """
      Check every configured backend

      Returns:
         {'prometheus': bool | None, 'slurm': bool | None, 'database': bool | None}
         where None means not configured
      """
      status: Dict[str, Optional[bool]] = {'prometheus': None, 'slurm': None, 'database': None}

      if self.metrics_client.is_configured():
         status['prometheus'] = self.metrics_client.test_connection()
      if self.slurm_client is not None:
         status['slurm'] = self.slurm_client.test_connection()
      if self._repository is not None:
         status['database'] = self._repository.db_manager.test_connection()

      return status

   def capture(self) -> CaptureResult:
      """
      Run one capture cycle, creating the store schema when missing

      Raises:
         RuntimeError: If the aggregate store is disabled
      """
      if self._repository is None:
         raise RuntimeError("Database not enabled; capture needs the aggregate store")

      if not self._schema_ready:
         DatabaseMigration(self.config, db_manager=self._repository.db_manager).initialize()
         self._schema_ready = True
      return self.aggregator.run_capture_cycle()
