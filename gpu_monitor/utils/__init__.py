"""
Utility functions and helpers
"""

from .logging_setup import setup_logging
from .formatters import format_duration, format_timestamp, format_percentage
from .concurrency import run_concurrently

__all__ = ['setup_logging', 'format_duration', 'format_timestamp', 'format_percentage',
           'run_concurrently']
