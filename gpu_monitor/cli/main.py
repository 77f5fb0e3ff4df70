"""
Main CLI entry point for GPU Monitor
"""

import argparse
import sys
import logging
from datetime import datetime, timezone
from typing import List, Optional

from ..config import Config
from ..monitor import GPUMonitor
from ..utils.logging_setup import setup_logging
from .commands import (
   StatusCommand, CaptureCommand, JobCommand, OverviewCommand, ReportCommand,
   NodeCommand, HistoryCommand, DatabaseCommand
)


def parse_datetime(value: str) -> datetime:
   """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
   try:
      parsed = datetime.fromisoformat(value)
   except ValueError:
      raise argparse.ArgumentTypeError(f"Invalid timestamp: {value!r} (expected ISO-8601)")
   if parsed.tzinfo is None:
      parsed = parsed.replace(tzinfo=timezone.utc)
   return parsed


def create_parser() -> argparse.ArgumentParser:
   """Create argument parser for GPU Monitor CLI"""

   parser = argparse.ArgumentParser(
      prog="gpu-monitor",
      description="""GPU utilization monitoring for Slurm clusters with DCGM telemetry

Configuration file locations (searched in order):
  ~/.gpu_monitor.yaml
  ~/.config/gpu_monitor/config.yaml
  /etc/gpu_monitor/config.yaml
  gpu_monitor.yaml (current directory)

Environment variables PROMETHEUS_URL, SLURM_SERVER, SLURM_API_TOKEN and
GPU_MONITOR_DB_URL override the file.""",
      formatter_class=argparse.RawDescriptionHelpFormatter,
      epilog="""
Examples:
  gpu-monitor status                  # Check Prometheus, Slurm and database
  gpu-monitor capture                 # Run one capture cycle
  gpu-monitor capture --loop          # Capture every minute until interrupted
  gpu-monitor job 12345               # GPU statistics for one job
  gpu-monitor overview                # Fleet-wide GPU statistics
  gpu-monitor report --time-range 24h # Per-job report with wasted GPU-hours
  gpu-monitor node gpu-node-01        # Per-GPU utilization on one node
  gpu-monitor history --underutilized # Stored jobs below 30% utilization
  gpu-monitor config --create         # Create sample configuration
      """
   )

   # Global options
   parser.add_argument(
      "-c", "--config",
      help="Configuration file path",
      default=None
   )

   parser.add_argument(
      "-v", "--verbose",
      action="store_true",
      help="Enable verbose logging"
   )

   parser.add_argument(
      "-q", "--quiet",
      action="store_true",
      help="Suppress normal output"
   )

   parser.add_argument(
      "--log-file",
      help="Log file path",
      default=None
   )

   parser.add_argument(
      "--max-width",
      type=int,
      help="Maximum table width (overrides config)"
   )

   parser.add_argument(
      "--no-color",
      action="store_true",
      help="Plain tables without colors"
   )

   # Create subparsers
   subparsers = parser.add_subparsers(
      dest="command",
      help="Available commands"
   )

   # Status command
   subparsers.add_parser(
      "status",
      help="Check connectivity of Prometheus, Slurm and the database"
   )

   # Capture command
   capture_parser = subparsers.add_parser(
      "capture",
      help="Capture current GPU utilization into the database"
   )
   capture_parser.add_argument(
      "--loop",
      action="store_true",
      help="Keep capturing until interrupted"
   )
   capture_parser.add_argument(
      "--interval",
      type=int,
      help="Seconds between captures in --loop mode (default: capture.loop_interval)"
   )
   capture_parser.add_argument(
      "--format",
      choices=["table", "json"],
      default="table",
      help="Output format (default: table)"
   )

   # Job command
   job_parser = subparsers.add_parser(
      "job",
      help="Show GPU statistics for one job"
   )
   job_parser.add_argument(
      "job_id",
      help="Slurm job ID"
   )
   job_parser.add_argument(
      "--format",
      choices=["table", "json"],
      default="table",
      help="Output format (default: table)"
   )

   # Overview command
   overview_parser = subparsers.add_parser(
      "overview",
      help="Show fleet-wide GPU statistics"
   )
   overview_parser.add_argument(
      "--since",
      type=parse_datetime,
      help="Window start for the stored fallback (ISO-8601)"
   )
   overview_parser.add_argument(
      "--until",
      type=parse_datetime,
      help="Window end for the stored fallback (ISO-8601)"
   )
   overview_parser.add_argument(
      "--format",
      choices=["table", "json"],
      default="table",
      help="Output format (default: table)"
   )

   # Report command
   report_parser = subparsers.add_parser(
      "report",
      help="Per-job utilization report with wasted GPU-hours"
   )
   report_parser.add_argument(
      "-t", "--time-range",
      help="Time range such as 24h or 7d (default: report.default_time_range)"
   )
   report_parser.add_argument(
      "-j", "--job",
      help="Restrict the report to one job"
   )
   report_parser.add_argument(
      "-l", "--limit",
      type=int,
      default=50,
      help="Maximum number of jobs to show (default: 50)"
   )
   report_parser.add_argument(
      "--underutilized",
      action="store_true",
      help="Only show underutilized jobs"
   )
   report_parser.add_argument(
      "--format",
      choices=["table", "json"],
      default="table",
      help="Output format (default: table)"
   )

   # Node command
   node_parser = subparsers.add_parser(
      "node",
      help="Show per-GPU utilization on one node"
   )
   node_parser.add_argument(
      "hostname",
      help="Node hostname"
   )
   node_parser.add_argument(
      "--format",
      choices=["table", "json"],
      default="table",
      help="Output format (default: table)"
   )

   # History command
   history_parser = subparsers.add_parser(
      "history",
      help="Show stored per-job GPU utilization"
   )
   history_parser.add_argument(
      "-d", "--days",
      type=int,
      default=7,
      help="Number of days to look back (default: 7)"
   )
   history_parser.add_argument(
      "--underutilized",
      action="store_true",
      help="Only show underutilized jobs"
   )
   history_parser.add_argument(
      "--completed-only",
      action="store_true",
      help="Exclude jobs that are still active"
   )
   history_parser.add_argument(
      "--distribution",
      action="store_true",
      help="Show the utilization distribution instead of the job table"
   )
   history_parser.add_argument(
      "-l", "--limit",
      type=int,
      default=50,
      help="Maximum number of jobs to show (default: 50)"
   )

   # Database command
   database_parser = subparsers.add_parser(
      "database",
      help="Database management"
   )
   database_subparsers = database_parser.add_subparsers(
      dest="database_action",
      help="Database actions"
   )
   database_subparsers.add_parser("init", help="Initialize database schema")
   database_subparsers.add_parser("status", help="Show database status and information")
   database_subparsers.add_parser("validate", help="Validate database schema")
   cleanup_parser = database_subparsers.add_parser(
      "cleanup",
      help="Remove completed jobs beyond the retention window"
   )
   cleanup_parser.add_argument(
      "--days",
      type=int,
      help="Retention in days (default: database.completed_retention_days)"
   )
   cleanup_parser.add_argument(
      "--dry-run",
      action="store_true",
      help="Only report how many rows would be removed"
   )
   cleanup_parser.add_argument(
      "--force",
      action="store_true",
      help="Skip confirmation prompt"
   )

   # Config command
   config_parser = subparsers.add_parser(
      "config",
      help="Configuration management"
   )
   config_parser.add_argument(
      "--create",
      action="store_true",
      help="Create sample configuration file"
   )
   config_parser.add_argument(
      "--show",
      action="store_true",
      help="Show current configuration"
   )

   return parser


def setup_logging_from_args(args: argparse.Namespace, config: Config) -> None:
   """Setup logging based on command line arguments and configuration"""

   # Determine log level
   if args.verbose:
      level = logging.DEBUG
   elif args.quiet:
      level = logging.ERROR
   else:
      level = config.get_log_level()

   # Determine log file
   log_file = args.log_file or config.logging.log_file

   setup_logging(
      level=level,
      log_file=log_file,
      log_format=config.logging.log_format,
      date_format=config.logging.date_format,
      console_output=not args.quiet
   )


def apply_cli_overrides(args: argparse.Namespace, config: Config) -> None:
   """Apply command-line overrides to configuration"""

   if getattr(args, 'max_width', None):
      config.display.max_table_width = args.max_width
      config.display.auto_width = False

   if getattr(args, 'no_color', False):
      config.display.use_colors = False


def handle_config_command(args: argparse.Namespace, config: Config) -> int:
   """Handle configuration management commands"""

   if args.create:
      config.create_sample_config()
      return 0

   if args.show:
      print(f"Configuration file: {config.config_file}")
      print(f"Prometheus URL: {config.prometheus.url or 'not configured'}")
      print(f"Prometheus query timeout: {config.prometheus.query_timeout}s")
      print(f"Job label: {config.prometheus.job_label}")
      print(f"Slurm server: {config.slurm.server or 'not configured'}")
      print(f"Slurm API version: {config.slurm.api_version}")
      print(f"Minimum capture interval: {config.capture.min_capture_interval}s")
      print(f"Completion grace: {config.capture.completion_grace_minutes} minutes")
      print(f"Freshness window: {config.capture.freshness_window}s")
      print(f"Assumed job duration: {config.report.assumed_job_duration_hours or 'none'}")
      print(f"Database URL: {config.database.url}")
      print(f"Log level: {config.logging.level}")
      print(f"Use colors: {config.display.use_colors}")
      return 0

   print("Use --create to create sample configuration or --show to display current settings")
   return 1


COMMANDS = {
   'status': StatusCommand,
   'capture': CaptureCommand,
   'job': JobCommand,
   'overview': OverviewCommand,
   'report': ReportCommand,
   'node': NodeCommand,
   'history': HistoryCommand,
}


def main(argv: Optional[List[str]] = None) -> int:
   """
   Main entry point for GPU Monitor CLI

   Args:
      argv: Command line arguments (optional, for testing)

   Returns:
      Exit code
   """

   parser = create_parser()
   args = parser.parse_args(argv)

   config = Config(config_file=args.config)

   apply_cli_overrides(args, config)

   setup_logging_from_args(args, config)
   logger = logging.getLogger(__name__)

   # Handle no command
   if not args.command:
      parser.print_help()
      return 1

   if args.command == "config":
      return handle_config_command(args, config)

   # Database command doesn't need the metrics backend
   if args.command == "database":
      return DatabaseCommand(None, config).execute(args)

   command_class = COMMANDS.get(args.command)
   if command_class is None:
      print(f"Unknown command: {args.command}", file=sys.stderr)
      return 1

   try:
      monitor = GPUMonitor(config)
      return command_class(monitor, config).execute(args)

   except KeyboardInterrupt:
      print("\nInterrupted by user", file=sys.stderr)
      return 130

   except (RuntimeError, ValueError) as e:
      logger.error(f"Command execution failed: {str(e)}")
      print(f"Error: {str(e)}", file=sys.stderr)
      return 1


if __name__ == "__main__":
   sys.exit(main())
