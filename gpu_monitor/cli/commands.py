"""
Command implementations for GPU Monitor CLI
"""

import argparse
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from tabulate import tabulate
from rich.console import Console
from rich.table import Table

from ..analytics import UtilizationHistoryAnalyzer
from ..config import Config
from ..database.migrations import DatabaseMigration
from ..database.repositories import JobGPUMetricsRepository
from ..models.gpu_stats import CaptureResult, FleetReport
from ..monitor import GPUMonitor
from ..reader import ReadResult, ReadStatus
from ..utils.formatters import (
   format_hours, format_percentage, format_number, format_node_list, format_timestamp,
   format_utilization_flag, format_source
)


class BaseCommand(ABC):
   """Base class for CLI commands"""

   def __init__(self, monitor: Optional[GPUMonitor], config: Config):
      self.monitor = monitor
      self.config = config
      self.logger = logging.getLogger(__name__)

      console_width = None if config.display.auto_width else config.display.max_table_width
      self.console = Console(
         width=console_width,
         force_terminal=True if config.display.use_colors else False
      )

   @abstractmethod
   def execute(self, args: argparse.Namespace) -> int:
      """Execute the command"""
      pass

   def _create_table(self, title: str, headers: List[str], rows: List[List[str]]) -> Table:
      """Create a rich table with intelligent column sizing"""
      column_widths = self._calculate_column_widths(headers, rows)

      table = Table(
         title=title,
         show_header=True,
         header_style="bold magenta",
         expand=self.config.display.expand_columns,
         width=None if self.config.display.auto_width else self.config.display.max_table_width
      )

      for i, header in enumerate(headers):
         width = column_widths[i] if i < len(column_widths) else None
         table.add_column(
            header,
            style="cyan",
            width=width,
            min_width=self.config.display.min_column_width,
            max_width=self.config.display.max_column_width,
            no_wrap=not self.config.display.word_wrap
         )

      for row in rows:
         table.add_row(*row)

      return table

   def _calculate_column_widths(self, headers: List[str], rows: List[List[str]]) -> List[int]:
      """Calculate optimal column widths based on content"""
      if not rows:
         return [len(header) + 2 for header in headers]

      column_widths = []
      for i, header in enumerate(headers):
         max_width = len(header)
         for row in rows:
            if i < len(row) and row[i]:
               max_width = max(max_width, len(str(row[i])))

         column_widths.append(min(
            max(max_width + 2, self.config.display.min_column_width),
            self.config.display.max_column_width
         ))

      return column_widths

   def _print_table(self, title: str, headers: List[str], rows: List[List[str]]) -> None:
      """Print a table with rich, or a plain grid when colors are off"""
      if self.config.display.use_colors:
         self.console.print(self._create_table(title, headers, rows))
         return

      print(f"\n{title}")
      if not self.config.display.expand_columns:
         limit = self.config.display.max_column_width
         rows = [[str(cell) if len(str(cell)) <= limit else str(cell)[:limit - 3] + "..."
                  for cell in row] for row in rows]
      print(tabulate(rows, headers=headers, tablefmt="grid"))

   def _print_json(self, data: Any) -> None:
      print(json.dumps(data, indent=2, default=str))

   def _report_read_failure(self, result: ReadResult, what: str) -> int:
      """Print why a read produced no data and return the exit code"""
      if result.status is ReadStatus.NOT_CONFIGURED:
         print(f"Error: cannot read {what}: no metrics backend or database configured")
         print("Set prometheus.url (or PROMETHEUS_URL) in the configuration.")
      elif result.status is ReadStatus.BACKEND_UNAVAILABLE:
         print(f"Error: {what} unavailable, backends failed:")
      else:
         print(f"No data found for {what}")

      for error in result.errors:
         print(f"  - {error}")
      return 1

   def _print_warnings(self, errors: List[str]) -> None:
      if errors:
         self.logger.warning(f"{len(errors)} backend error(s) during read")
         for error in errors:
            self.logger.debug(error)


class StatusCommand(BaseCommand):
   """Check connectivity of every configured backend"""

   def execute(self, args: argparse.Namespace) -> int:
      try:
         status = self.monitor.test_connections()
      except Exception as e:
         self.logger.error(f"Status check failed: {str(e)}")
         print(f"Error: {str(e)}")
         return 1

      labels = {
         'prometheus': f"Prometheus ({self.config.prometheus.url or 'not configured'})",
         'slurm': f"Slurm REST API ({self.config.slurm.server or 'not configured'})",
         'database': "Aggregate store"
      }

      rows = []
      for key, label in labels.items():
         value = status.get(key)
         if value is None:
            state = "not configured"
         else:
            state = "OK" if value else "FAILED"
         rows.append([label, state])

      self._print_table("GPU Monitor Status", ["Backend", "State"], rows)

      # Anything configured but unreachable is a failure
      return 1 if any(value is False for value in status.values()) else 0


class CaptureCommand(BaseCommand):
   """Run capture cycles into the aggregate store"""

   def execute(self, args: argparse.Namespace) -> int:
      if not self.monitor.database_enabled:
         print("Error: Database is not enabled. Capture needs the aggregate store.")
         return 1

      if not getattr(args, 'loop', False):
         return self._capture_once(args)

      interval = args.interval or self.config.capture.loop_interval
      print(f"Capturing every {interval}s (Ctrl+C to stop)")
      try:
         while True:
            self._capture_once(args)
            time.sleep(interval)
      except KeyboardInterrupt:
         print("\nCapture loop stopped")
         return 0

   def _capture_once(self, args: argparse.Namespace) -> int:
      try:
         result = self.monitor.capture()
      except Exception as e:
         self.logger.error(f"Capture failed: {str(e)}")
         print(f"Capture failed: {str(e)}")
         return 1

      if getattr(args, 'format', 'table') == 'json':
         self._print_json(result.to_dict())
      else:
         self._display_result(result)

      return 1 if result.errors and not (result.captured or result.updated) else 0

   def _display_result(self, result: CaptureResult) -> None:
      if result.rate_limited:
         print(f"Capture skipped: rate limited, next capture in {result.next_capture_in}s")
         return

      print(f"Capture completed: {result.captured} new, {result.updated} updated, "
            f"{result.marked_complete} marked complete")
      if result.skipped:
         print(f"  {result.skipped} job(s) already complete were left unchanged")
      if result.errors:
         print("Errors:")
         for error in result.errors:
            print(f"  - {error}")


class JobCommand(BaseCommand):
   """Show GPU statistics for one job"""

   def execute(self, args: argparse.Namespace) -> int:
      result = self.monitor.reader.read_job(args.job_id)
      if not result.ok:
         return self._report_read_failure(result, f"job {args.job_id}")

      stats = result.data
      self._print_warnings(result.errors)

      if args.format == 'json':
         self._print_json(stats.to_dict())
         return 0

      rows = [
         ["Average utilization", format_percentage(stats.avg_utilization)],
         ["P95 utilization", format_percentage(stats.p95_utilization)],
         ["Memory used", format_percentage(stats.memory_pct)],
         ["GPUs", format_number(stats.gpu_count)],
         ["Underutilized", "yes" if stats.is_underutilized else "no"],
         ["Source", format_source(stats.source.value)]
      ]
      if stats.is_complete is not None:
         rows.append(["Status", "Complete" if stats.is_complete else "Active"])

      self._print_table(f"GPU Statistics for Job {stats.job_id}", ["Metric", "Value"], rows)
      return 0


class OverviewCommand(BaseCommand):
   """Show fleet-wide GPU statistics"""

   def execute(self, args: argparse.Namespace) -> int:
      result = self.monitor.reader.read_overview(since=args.since, until=args.until)
      if not result.ok:
         return self._report_read_failure(result, "fleet overview")

      stats = result.data
      self._print_warnings(result.errors)

      if args.format == 'json':
         self._print_json(stats.to_dict())
         return 0

      rows = [
         ["Average utilization", format_percentage(stats.avg_utilization)],
         ["P95 utilization", format_percentage(stats.p95_utilization)],
         ["Memory utilization", format_percentage(stats.memory_utilization)],
         ["GPUs in use", format_number(stats.total_gpus)],
         ["Active jobs", format_number(stats.active_jobs)],
         ["Underutilized jobs", format_number(stats.underutilized_jobs)],
         ["Source", format_source(stats.source.value)]
      ]
      self._print_table("Fleet GPU Overview", ["Metric", "Value"], rows)
      return 0


class ReportCommand(BaseCommand):
   """Per-job utilization report with wasted GPU-hours"""

   def execute(self, args: argparse.Namespace) -> int:
      try:
         result = self.monitor.reader.read_fleet_report(time_range=args.time_range, job_id=args.job)
      except ValueError as e:
         print(f"Error: {str(e)}")
         return 1

      if not result.ok:
         what = f"job {args.job}" if args.job else "fleet report"
         return self._report_read_failure(result, what)

      report = result.data
      self._print_warnings(result.errors)

      jobs = sorted(report.jobs, key=lambda job: (-job.wasted_gpu_hours, job.job_id))
      if args.underutilized:
         jobs = [job for job in jobs if job.is_underutilized]
      if args.limit:
         jobs = jobs[:args.limit]

      if args.format == 'json':
         data = report.to_dict()
         data['jobs'] = [job.to_dict() for job in jobs]
         self._print_json(data)
         return 0

      self._display_report(report, jobs)
      return 0

   def _display_report(self, report: FleetReport, jobs) -> None:
      headers = ["Job ID", "User", "Account", "GPUs", "Avg Util", "Duration",
                 "Wasted GPU-h", "Nodes", "Model", ""]
      rows = [[
         job.job_id,
         job.user_name or "N/A",
         job.account or "N/A",
         format_number(job.gpu_count),
         format_percentage(job.avg_utilization),
         format_hours(job.duration_hours),
         format_number(job.wasted_gpu_hours, 1),
         format_node_list(job.node_names),
         job.gpu_model or "N/A",
         format_utilization_flag(job.is_underutilized)
      ] for job in jobs]

      title = f"GPU Utilization Report ({report.time_range}, {format_source(report.source.value)})"
      self._print_table(title, headers, rows)

      print(f"\nJobs: {report.total_jobs}  "
            f"Average utilization: {format_percentage(report.average_utilization)}  "
            f"Underutilized: {report.underutilized_job_count}  "
            f"Wasted GPU-hours: {format_number(report.total_wasted_gpu_hours, 1)}")
      if len(jobs) < report.total_jobs:
         print(f"Showing {len(jobs)} of {report.total_jobs} jobs")


class NodeCommand(BaseCommand):
   """Show per-GPU utilization on one node"""

   def execute(self, args: argparse.Namespace) -> int:
      result = self.monitor.reader.read_node(args.hostname)
      if not result.ok:
         return self._report_read_failure(result, f"node {args.hostname}")

      readings = result.data
      if args.format == 'json':
         self._print_json([reading.to_dict() for reading in readings])
         return 0

      rows = [[
         reading.device,
         reading.device_model or "N/A",
         format_percentage(reading.utilization),
         reading.job_id or "idle"
      ] for reading in readings]
      self._print_table(f"GPUs on {args.hostname} (5m average)",
                        ["GPU", "Model", "Utilization", "Job"], rows)
      return 0


class HistoryCommand(BaseCommand):
   """Show stored per-job utilization from the database"""

   def execute(self, args: argparse.Namespace) -> int:
      if not self.monitor.database_enabled:
         print("Error: Database is not enabled. Historical data is not available.")
         print("Please run 'gpu-monitor database init' to set up the database.")
         return 1

      try:
         analyzer = UtilizationHistoryAnalyzer(self.monitor.repository_factory)

         if args.distribution:
            df = analyzer.utilization_distribution(days=args.days)
            self._print_table(f"Job Utilization Distribution (last {args.days} days)",
                              list(df.columns), df.astype(str).values.tolist())
            return 0

         df = analyzer.job_table(days=args.days, underutilized_only=args.underutilized,
                                 include_active=not args.completed_only)
         if df.empty:
            print(f"No stored jobs in the last {args.days} days")
            return 0

         total = len(df)
         if args.limit:
            df = df.head(args.limit)
         self._print_table(f"Stored GPU Utilization (last {args.days} days)",
                           list(df.columns), df.astype(str).values.tolist())

         summary = analyzer.summary(days=args.days)
         print(f"\nJobs: {summary['jobs']}  "
               f"Mean utilization: {format_percentage(summary['mean_utilization'])}  "
               f"Median: {format_percentage(summary['median_utilization'])}  "
               f"Underutilized: {summary['underutilized_jobs']}  "
               f"GPU-hours: {format_number(summary['gpu_hours'], 1)}")
         if len(df) < total:
            print(f"Showing {len(df)} of {total} jobs")
         return 0

      except Exception as e:
         self.logger.error(f"History command failed: {str(e)}")
         print(f"Error: {str(e)}")
         return 1


class DatabaseCommand(BaseCommand):
   """Database management commands"""

   def execute(self, args: argparse.Namespace) -> int:
      subcommand = args.database_action

      if subcommand is None:
         print("Error: No database action specified")
         print("\nAvailable database actions:")
         print("  init      Initialize database schema")
         print("  status    Show database status and information")
         print("  validate  Validate database schema")
         print("  cleanup   Remove completed jobs beyond the retention window")
         print("\nExamples:")
         print("  gpu-monitor database init                  # Initialize database")
         print("  gpu-monitor database cleanup --days 30     # Remove old completed jobs")
         return 1

      handlers = {
         'init': self._init_database,
         'status': self._show_database_status,
         'validate': self._validate_database,
         'cleanup': self._cleanup_database,
      }
      handler = handlers.get(subcommand)
      if handler is None:
         print(f"Unknown database subcommand: {subcommand}")
         return 1

      try:
         return handler(args, DatabaseMigration(self.config))
      except Exception as e:
         self.logger.error(f"Database command failed: {str(e)}")
         print(f"Error: {str(e)}")
         return 1

   def _init_database(self, args: argparse.Namespace, migration: DatabaseMigration) -> int:
      print("Initializing database...")
      created = migration.initialize()
      if created:
         print(f"Created tables: {', '.join(created)}")
      print("Database initialized successfully")
      return 0

   def _show_database_status(self, args: argparse.Namespace, migration: DatabaseMigration) -> int:
      info = migration.get_database_info()

      print("Database Information")
      print("=" * 50)
      print(f"Database URL: {info['url']}")
      print(f"Dialect: {info['dialect']}")
      if info['size_bytes']:
         print(f"Database Size: {info['size_bytes'] / (1024 * 1024):.1f} MB")

      print(f"\nTables: {len(info['tables'])}")
      for table in sorted(info['tables']):
         print(f"  {table}")

      if 'job_gpu_metrics' in info['tables']:
         stats = JobGPUMetricsRepository(self.config, migration.db_manager).get_statistics()
         print(f"\nStored jobs: {stats['total_jobs']} "
               f"({stats['active_jobs']} active, {stats['completed_jobs']} complete)")
         if stats['newest_record']:
            print(f"Latest observation: {format_timestamp(stats['newest_record'], '%Y-%m-%d %H:%M:%S %Z')}")

      self._print_validation(info['validation'])
      return 0

   def _validate_database(self, args: argparse.Namespace, migration: DatabaseMigration) -> int:
      print("Validating database schema...")
      validation = migration.validate_schema()
      self._print_validation(validation)
      return 0 if validation['valid'] else 1

   def _print_validation(self, validation: dict) -> None:
      print(f"\nSchema Validation: {'PASS' if validation['valid'] else 'FAIL'}")
      for label in ('errors', 'warnings'):
         if validation.get(label):
            print(f"{label.capitalize()}:")
            for message in validation[label]:
               print(f"  - {message}")

   def _cleanup_database(self, args: argparse.Namespace, migration: DatabaseMigration) -> int:
      days = args.days if args.days is not None else self.config.database.completed_retention_days
      print(f"Removing completed jobs last seen more than {days} days ago")

      if not args.dry_run and not args.force:
         confirm = input("Continue? Type 'yes' to proceed: ")
         if confirm.lower() != 'yes':
            print("Database cleanup cancelled")
            return 0

      results = migration.clean_old_data(completed_days=days, dry_run=args.dry_run)
      verb = "Would remove" if args.dry_run else "Removed"
      print(f"{verb} {results['completed_jobs']} completed job records")
      return 0
