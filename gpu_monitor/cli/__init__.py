"""
Command-line interface for GPU Monitor
"""

from .main import main

__all__ = ['main']
