"""
Formatting utilities for GPU Monitor
"""

from datetime import datetime
from typing import Optional, Union, List


DURATION_UNITS = (('d', 86400), ('h', 3600), ('m', 60), ('s', 1))


def format_duration(seconds: Union[int, float, None]) -> str:
   """
   Format a duration using its two largest units

   Args:
      seconds: Duration in seconds

   Returns:
      Formatted duration (e.g. "2d 3h", "1h 30m", "45s"), "N/A" when unknown
   """
   try:
      remaining = int(seconds)
   except (ValueError, TypeError):
      return "N/A"
   if remaining < 0:
      return "N/A"

   parts = []
   for suffix, size in DURATION_UNITS:
      amount, remaining = divmod(remaining, size)
      if amount or parts:
         parts.append((amount, suffix))
      if len(parts) == 2:
         break

   if not parts:
      return "0s"
   return " ".join(f"{amount}{suffix}" for amount, suffix in parts if amount)


def format_hours(hours: Optional[float]) -> str:
   """Format a duration given in hours"""
   if hours is None:
      return "N/A"
   return format_duration(hours * 3600)


def format_timestamp(
   timestamp: Optional[datetime],
   format_str: str = "%d-%m %H:%M"
) -> str:
   """
   Format timestamp to string

   Args:
      timestamp: Datetime object to format
      format_str: Format string (default: DD-MM HH:MM)

   Returns:
      Formatted timestamp string
   """
   if timestamp is None:
      return "N/A"

   try:
      return timestamp.strftime(format_str)
   except (ValueError, TypeError):
      return "N/A"


def format_percentage(value: Optional[float], decimal_places: int = 1) -> str:
   """
   Format percentage value

   Args:
      value: Percentage value
      decimal_places: Number of decimal places

   Returns:
      Formatted percentage string
   """
   if value is None:
      return "N/A"

   try:
      return f"{value:.{decimal_places}f}%"
   except (ValueError, TypeError):
      return "N/A"


def format_number(value: Optional[Union[int, float]], decimal_places: int = 0) -> str:
   """Format numeric value"""
   if value is None:
      return "N/A"

   try:
      if decimal_places == 0:
         return f"{int(value)}"
      return f"{value:.{decimal_places}f}"
   except (ValueError, TypeError):
      return "N/A"


def format_node_list(nodes: List[str], max_display: int = 3) -> str:
   """
   Format list of nodes for display

   Args:
      nodes: List of node names
      max_display: Maximum nodes to display

   Returns:
      Formatted node list string
   """
   if not nodes:
      return "N/A"

   if len(nodes) <= max_display:
      return ", ".join(nodes)

   displayed = nodes[:max_display]
   remaining = len(nodes) - max_display

   return f"{', '.join(displayed)} (+{remaining} more)"


def format_utilization_flag(is_underutilized: bool) -> str:
   """Marker shown next to underutilized jobs"""
   return "LOW" if is_underutilized else ""


def format_source(source: str) -> str:
   """Human-readable name of a statistics source"""
   return {
      'precomputed': 'Recording rules',
      'direct': 'Live samples',
      'stored': 'Stored aggregates'
   }.get(source, source)
