"""
Database repositories for GPU Monitor

Provides data access layer for the aggregate store.
"""

from enum import Enum
from typing import List, Optional, Dict, Any, Iterable
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, func, update, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .connection import DatabaseManager
from .models import JobGPUMetrics, ensure_utc
from ..config import Config
from ..models.gpu_stats import CycleJobMetrics, UNDERUTILIZED_THRESHOLD


class MergeOutcome(Enum):
    """Result of merging one job's cycle statistics into the store"""
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _greater(new_value, current_value):
    return case((new_value > current_value, new_value), else_=current_value)


def _lesser(new_value, current_value):
    return case((new_value < current_value, new_value), else_=current_value)


class BaseRepository:
    """Base repository class with common functionality"""

    def __init__(self, config: Optional[Config] = None,
                 db_manager: Optional[DatabaseManager] = None):
        self.config = config or (db_manager.config if db_manager else Config())
        self._db_manager = db_manager or DatabaseManager(self.config)

    @property
    def db_manager(self) -> DatabaseManager:
        return self._db_manager

    def get_session(self) -> Session:
        """Get database session"""
        return self._db_manager.get_session()


class JobGPUMetricsRepository(BaseRepository):
    """Repository for per-job rolling GPU statistics"""

    def _insert_statement(self):
        dialect = self._db_manager.dialect
        if dialect == 'postgresql':
            return postgresql.insert(JobGPUMetrics.__table__)
        if dialect == 'sqlite':
            return sqlite.insert(JobGPUMetrics.__table__)
        raise ValueError(f"Upsert not supported for dialect '{dialect}'")

    def upsert_cycle_metrics(self, metrics: CycleJobMetrics,
                             now: Optional[datetime] = None) -> MergeOutcome:
        """
        Merge one cycle's statistics for a job in a single statement

        New jobs are inserted with sample_count = 1. Existing active rows get
        the running average over cycles, running extrema, the higher device
        count and sample_count + 1. Completed rows are left unchanged.

        Args:
            metrics: Statistics of the current cycle
            now: Observation time (default: current UTC time)

        Returns:
            MergeOutcome describing what happened to the row
        """
        now = now or _utcnow()
        table = JobGPUMetrics.__table__

        stmt = self._insert_statement().values(
            job_id=metrics.job_id,
            avg_utilization=metrics.avg_utilization,
            max_utilization=metrics.max_utilization,
            min_utilization=metrics.min_utilization,
            avg_memory_pct=metrics.avg_memory_pct,
            max_memory_pct=metrics.max_memory_pct,
            gpu_count=max(1, metrics.gpu_count),
            sample_count=1,
            first_seen=now,
            last_seen=now,
            is_complete=False
        )
        incoming = stmt.excluded
        count = table.c.sample_count

        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.job_id],
            set_={
                'avg_utilization': (table.c.avg_utilization * count + incoming.avg_utilization) / (count + 1),
                'max_utilization': _greater(incoming.max_utilization, table.c.max_utilization),
                'min_utilization': _lesser(incoming.min_utilization, table.c.min_utilization),
                'avg_memory_pct': (table.c.avg_memory_pct * count + incoming.avg_memory_pct) / (count + 1),
                'max_memory_pct': _greater(incoming.max_memory_pct, table.c.max_memory_pct),
                'gpu_count': _greater(incoming.gpu_count, table.c.gpu_count),
                'sample_count': count + 1,
                'last_seen': incoming.last_seen,
                'is_complete': False,
            },
            where=(table.c.is_complete == False)  # noqa: E712
        ).returning(table.c.sample_count)

        with self.get_session() as session:
            row = session.execute(stmt).first()

        if row is None:
            return MergeOutcome.SKIPPED
        return MergeOutcome.INSERTED if row[0] == 1 else MergeOutcome.UPDATED

    def mark_stale_complete(self, observed_job_ids: Iterable[str], cutoff: datetime) -> int:
        """
        Mark active jobs complete when they have not been seen since cutoff

        Args:
            observed_job_ids: Jobs observed in the current cycle; never marked
            cutoff: Rows with last_seen strictly before this are stale

        Returns:
            Number of rows marked complete
        """
        observed = list(observed_job_ids)
        stmt = update(JobGPUMetrics).where(
            JobGPUMetrics.is_complete == False,  # noqa: E712
            JobGPUMetrics.last_seen < cutoff
        )
        if observed:
            stmt = stmt.where(JobGPUMetrics.job_id.notin_(observed))
        stmt = stmt.values(is_complete=True).execution_options(synchronize_session=False)

        with self.get_session() as session:
            result = session.execute(stmt)
            return result.rowcount or 0

    def latest_active_update(self) -> Optional[datetime]:
        """Most recent last_seen among active rows (None when there are none)"""
        with self.get_session() as session:
            latest = session.query(func.max(JobGPUMetrics.last_seen)).filter(
                JobGPUMetrics.is_complete == False  # noqa: E712
            ).scalar()
            return ensure_utc(latest)

    def get_job_metrics(self, job_id: str) -> Optional[JobGPUMetrics]:
        """Get the stored aggregate of one job"""
        with self.get_session() as session:
            row = session.query(JobGPUMetrics).filter(JobGPUMetrics.job_id == job_id).first()
            if row:
                session.expunge(row)
            return row

    def get_metrics_for_jobs(self, job_ids: Iterable[str]) -> Dict[str, JobGPUMetrics]:
        """Get stored aggregates for several jobs, keyed by job id"""
        ids = list(set(job_ids))
        if not ids:
            return {}
        with self.get_session() as session:
            rows = session.query(JobGPUMetrics).filter(JobGPUMetrics.job_id.in_(ids)).all()
            session.expunge_all()
            return {row.job_id: row for row in rows}

    def get_active_metrics(self) -> List[JobGPUMetrics]:
        """Get all rows not yet marked complete"""
        with self.get_session() as session:
            rows = session.query(JobGPUMetrics).filter(
                JobGPUMetrics.is_complete == False  # noqa: E712
            ).order_by(JobGPUMetrics.job_id).all()
            session.expunge_all()
            return rows

    def get_metrics_in_window(self, since: Optional[datetime] = None,
                              until: Optional[datetime] = None) -> List[JobGPUMetrics]:
        """
        Get rows whose observation interval overlaps [since, until]

        With neither bound given, only active rows are returned.
        """
        if since is None and until is None:
            return self.get_active_metrics()

        with self.get_session() as session:
            query = session.query(JobGPUMetrics)
            if since is not None:
                query = query.filter(JobGPUMetrics.last_seen >= since)
            if until is not None:
                query = query.filter(JobGPUMetrics.first_seen <= until)
            rows = query.order_by(JobGPUMetrics.job_id).all()
            session.expunge_all()
            return rows

    def get_recent_metrics(self, days: int = 7, include_active: bool = True,
                           underutilized_only: bool = False) -> List[JobGPUMetrics]:
        """Get rows seen within the last `days` days"""
        cutoff = _utcnow() - timedelta(days=days)
        with self.get_session() as session:
            query = session.query(JobGPUMetrics).filter(JobGPUMetrics.last_seen >= cutoff)
            if not include_active:
                query = query.filter(JobGPUMetrics.is_complete == True)  # noqa: E712
            if underutilized_only:
                query = query.filter(JobGPUMetrics.avg_utilization < UNDERUTILIZED_THRESHOLD)
            rows = query.order_by(JobGPUMetrics.last_seen.desc()).all()
            session.expunge_all()
            return rows

    def cleanup_completed(self, older_than_days: int) -> int:
        """Delete completed rows last seen more than `older_than_days` ago"""
        cutoff = _utcnow() - timedelta(days=older_than_days)
        stmt = delete(JobGPUMetrics).where(
            JobGPUMetrics.is_complete == True,  # noqa: E712
            JobGPUMetrics.last_seen < cutoff
        ).execution_options(synchronize_session=False)
        with self.get_session() as session:
            result = session.execute(stmt)
            return result.rowcount or 0

    def get_statistics(self) -> Dict[str, Any]:
        """Row counts and observation range of the store"""
        with self.get_session() as session:
            total = session.query(func.count(JobGPUMetrics.job_id)).scalar() or 0
            active = session.query(func.count(JobGPUMetrics.job_id)).filter(
                JobGPUMetrics.is_complete == False  # noqa: E712
            ).scalar() or 0
            oldest, newest = session.query(
                func.min(JobGPUMetrics.first_seen), func.max(JobGPUMetrics.last_seen)
            ).one()

            return {
                'total_jobs': total,
                'active_jobs': active,
                'completed_jobs': total - active,
                'oldest_record': ensure_utc(oldest),
                'newest_record': ensure_utc(newest)
            }


# Repository factory for easy access
class RepositoryFactory:
    """Factory for creating repository instances that share one connection pool"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.db_manager = DatabaseManager(self.config)

    def get_job_gpu_metrics_repository(self) -> JobGPUMetricsRepository:
        return JobGPUMetricsRepository(self.config, db_manager=self.db_manager)
