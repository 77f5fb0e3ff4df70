"""
SQLAlchemy Models for GPU Monitor Database

This module contains the SQLAlchemy model for the per-job rolling GPU
statistics maintained by the capture cycle.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Optional

from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobGPUMetrics(Base):
    """
    Rolling GPU statistics per job

    One row per job id. Inserted on first observation, merged on every
    later capture cycle and marked complete once the job has been silent
    for the grace window. Averages are running means over cycles.
    """
    __tablename__ = 'job_gpu_metrics'

    job_id = Column(String(100), primary_key=True)

    # Utilization (percent)
    avg_utilization = Column(Float, nullable=False, default=0.0)
    max_utilization = Column(Float, nullable=False, default=0.0)
    min_utilization = Column(Float, nullable=False, default=0.0)

    # Framebuffer memory in use (percent)
    avg_memory_pct = Column(Float, nullable=False, default=0.0)
    max_memory_pct = Column(Float, nullable=False, default=0.0)

    # High-water mark of distinct devices
    gpu_count = Column(Integer, nullable=False, default=1)

    # Number of merged cycles
    sample_count = Column(Integer, nullable=False, default=1)

    first_seen = Column(DateTime(timezone=True), nullable=False, default=func.now())
    last_seen = Column(DateTime(timezone=True), nullable=False, default=func.now())
    is_complete = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index('ix_job_gpu_metrics_complete_last_seen', 'is_complete', 'last_seen'),
        Index('ix_job_gpu_metrics_first_seen', 'first_seen'),
    )

    def observed_hours(self) -> float:
        """Hours between first and last observation"""
        start = ensure_utc(self.first_seen)
        end = ensure_utc(self.last_seen)
        if start is None or end is None:
            return 0.0
        return max(0.0, (end - start).total_seconds() / 3600.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'avg_utilization': self.avg_utilization,
            'max_utilization': self.max_utilization,
            'min_utilization': self.min_utilization,
            'avg_memory_pct': self.avg_memory_pct,
            'max_memory_pct': self.max_memory_pct,
            'gpu_count': self.gpu_count,
            'sample_count': self.sample_count,
            'first_seen': ensure_utc(self.first_seen),
            'last_seen': ensure_utc(self.last_seen),
            'is_complete': self.is_complete
        }

    def __repr__(self) -> str:
        return (f"<JobGPUMetrics(job_id={self.job_id!r}, avg={self.avg_utilization}, "
                f"samples={self.sample_count}, complete={self.is_complete})>")
