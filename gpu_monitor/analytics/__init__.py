"""
Analytics module for GPU Monitor

Provides historical utilization analysis over the stored per-job aggregates.
"""

from .utilization_history import UtilizationHistoryAnalyzer

__all__ = ['UtilizationHistoryAnalyzer']
