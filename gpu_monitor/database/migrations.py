"""
Database Migration Utilities for GPU Monitor

This module provides utilities for database initialization, schema
validation and retention of completed job rows.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from .models import JobGPUMetrics
from .connection import DatabaseManager, REQUIRED_TABLES, initialize_tables
from ..config import Config
from ..utils.logging_setup import create_gpu_logger

logger = create_gpu_logger(__name__)

# Columns the capture cycle and readers depend on
REQUIRED_COLUMNS = {
    'job_gpu_metrics': [
        'job_id', 'avg_utilization', 'max_utilization', 'min_utilization',
        'avg_memory_pct', 'max_memory_pct', 'gpu_count', 'sample_count',
        'first_seen', 'last_seen', 'is_complete'
    ]
}


class DatabaseMigration:
    """Database migration manager"""

    def __init__(self, config: Optional[Config] = None,
                 db_manager: Optional[DatabaseManager] = None):
        self.config = config or (db_manager.config if db_manager else Config())
        self.db_manager = db_manager or DatabaseManager(self.config)
        self.db_manager.initialize()

    def get_existing_tables(self) -> List[str]:
        """Get list of existing tables in database"""
        return self.db_manager.get_table_names()

    def initialize(self) -> List[str]:
        """Create missing tables; returns the names that were created"""
        return initialize_tables(self.db_manager)

    def validate_schema(self) -> Dict[str, Any]:
        """Validate database schema"""
        validation_results = {
            'valid': True,
            'errors': [],
            'warnings': [],
            'table_status': {}
        }

        try:
            existing_tables = set(self.get_existing_tables())

            missing_tables = [name for name in REQUIRED_TABLES if name not in existing_tables]
            if missing_tables:
                validation_results['valid'] = False
                validation_results['errors'].append(f"Missing tables: {', '.join(missing_tables)}")

            extra_tables = existing_tables - set(REQUIRED_TABLES)
            if extra_tables:
                validation_results['warnings'].append(f"Extra tables found: {', '.join(sorted(extra_tables))}")

            for table in REQUIRED_TABLES:
                validation_results['table_status'][table] = 'exists' if table in existing_tables else 'missing'

            if validation_results['valid']:
                self._validate_table_structures(validation_results)

        except SQLAlchemyError as e:
            validation_results['valid'] = False
            validation_results['errors'].append(f"Schema validation error: {str(e)}")

        return validation_results

    def _validate_table_structures(self, validation_results: Dict[str, Any]) -> None:
        inspector = inspect(self.db_manager.engine)

        for table_name, required_columns in REQUIRED_COLUMNS.items():
            existing_columns = [col['name'] for col in inspector.get_columns(table_name)]
            missing_columns = sorted(set(required_columns) - set(existing_columns))

            if missing_columns:
                validation_results['valid'] = False
                validation_results['errors'].append(
                    f"Table '{table_name}' missing columns: {', '.join(missing_columns)}"
                )

    def clean_old_data(self, completed_days: Optional[int] = None, dry_run: bool = False) -> Dict[str, int]:
        """
        Remove completed job rows last seen before the retention window

        Args:
            completed_days: Retention in days (default: database.completed_retention_days)
            dry_run: Only count the rows that would be removed

        Returns:
            {'completed_jobs': <rows removed or removable>}
        """
        days = completed_days if completed_days is not None else self.config.database.completed_retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        with self.db_manager.get_session() as session:
            query = session.query(JobGPUMetrics).filter(
                JobGPUMetrics.is_complete == True,  # noqa: E712
                JobGPUMetrics.last_seen < cutoff
            )
            if dry_run:
                count = query.count()
            else:
                count = query.delete(synchronize_session=False)

        action = "Would remove" if dry_run else "Removed"
        logger.info(f"{action} {count} completed job rows older than {days} days")
        return {'completed_jobs': count}

    def get_database_info(self) -> Dict[str, Any]:
        """Get database information"""
        return {
            'url': self.db_manager._mask_url(self.db_manager._get_database_url()),
            'dialect': self.db_manager.dialect,
            'tables': self.get_existing_tables(),
            'size_bytes': self.db_manager.get_database_size(),
            'validation': self.validate_schema()
        }


def initialize_database(config: Optional[Config] = None) -> List[str]:
    """Initialize database with tables if they don't exist"""
    return DatabaseMigration(config).initialize()


def validate_database(config: Optional[Config] = None) -> Dict[str, Any]:
    """Validate database schema"""
    return DatabaseMigration(config).validate_schema()


def clean_old_data(completed_days: Optional[int] = None, dry_run: bool = False,
                   config: Optional[Config] = None) -> Dict[str, int]:
    """Remove completed rows beyond the retention window"""
    return DatabaseMigration(config).clean_old_data(completed_days, dry_run)


def get_database_info(config: Optional[Config] = None) -> Dict[str, Any]:
    """Get database information"""
    return DatabaseMigration(config).get_database_info()
