"""
Shared fixtures for GPU Monitor tests
"""

import os
import tempfile

import pytest

from gpu_monitor.config import Config
from gpu_monitor.database.migrations import initialize_database
from gpu_monitor.database.repositories import RepositoryFactory


@pytest.fixture
def temp_db_config(monkeypatch, tmp_path):
   """Configuration pointing at a temporary SQLite database"""
   monkeypatch.delenv('GPU_MONITOR_DB_URL', raising=False)

   temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db', dir=tmp_path)
   temp_db.close()

   config = Config(config_file=str(tmp_path / 'missing.yaml'), use_environment=False)
   config.database.url = f"sqlite:///{temp_db.name}"

   yield config

   try:
      os.unlink(temp_db.name)
   except OSError:
      pass


@pytest.fixture
def initialized_db(temp_db_config):
   """Temporary database with the schema created"""
   initialize_database(temp_db_config)
   return temp_db_config


@pytest.fixture
def repository(initialized_db):
   factory = RepositoryFactory(initialized_db)
   yield factory.get_job_gpu_metrics_repository()
   factory.db_manager.close()
