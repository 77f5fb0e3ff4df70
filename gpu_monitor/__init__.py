"""
GPU Monitor - GPU utilization monitoring for Slurm clusters
"""

__version__ = "0.1.0"
__author__ = "GPU Monitor Team"
__description__ = "Per-job GPU utilization from DCGM metrics in Prometheus"

from .config import Config
from .monitor import GPUMonitor
from .aggregator import RollingAggregator
from .reader import DualPathReader

__all__ = ['Config', 'GPUMonitor', 'RollingAggregator', 'DualPathReader']
