"""
Database module for GPU Monitor

Provides database connectivity, models, and data access layer for the
aggregate store.
"""

from .models import Base, JobGPUMetrics
from .connection import DatabaseManager, resolve_database_url
from .repositories import JobGPUMetricsRepository, MergeOutcome, RepositoryFactory
from .migrations import (
    DatabaseMigration, initialize_database, validate_database, clean_old_data, get_database_info
)

__all__ = [
    # Models
    'Base', 'JobGPUMetrics',

    # Connection
    'DatabaseManager', 'resolve_database_url',

    # Repositories
    'JobGPUMetricsRepository', 'MergeOutcome', 'RepositoryFactory',

    # Migrations
    'DatabaseMigration', 'initialize_database', 'validate_database',
    'clean_old_data', 'get_database_info',
    'get_repository_factory'
]


def get_repository_factory(config=None):
    """Convenience function for the CLI to get a repository factory."""
    return RepositoryFactory(config)
