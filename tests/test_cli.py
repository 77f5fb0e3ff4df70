"""
Tests for the GPU Monitor command-line interface
"""

import json
from datetime import timezone
from unittest.mock import Mock, patch

import pytest

from gpu_monitor.cli.main import create_parser, main, parse_datetime
from gpu_monitor.models.gpu_stats import CaptureResult, JobGPUStats, StatsSource
from gpu_monitor.reader import ReadResult, ReadStatus


@pytest.fixture
def config_file(tmp_path, monkeypatch):
   """Configuration file with a temporary SQLite database"""
   for name in ('GPU_MONITOR_DB_URL', 'PROMETHEUS_URL', 'SLURM_SERVER'):
      monkeypatch.delenv(name, raising=False)
   path = tmp_path / 'config.yaml'
   path.write_text(f"database:\n  url: sqlite:///{tmp_path / 'gpu.db'}\n")
   return str(path)


def mock_monitor(**reader_results):
   monitor = Mock()
   for method, result in reader_results.items():
      getattr(monitor.reader, method).return_value = result
   return monitor


class TestParser:
   """Test argument parsing"""

   def test_report_arguments(self):
      args = create_parser().parse_args(["report", "-t", "24h", "--job", "42", "--format", "json"])
      assert args.command == "report"
      assert args.time_range == "24h"
      assert args.job == "42"
      assert args.format == "json"

   def test_capture_loop(self):
      args = create_parser().parse_args(["capture", "--loop", "--interval", "30"])
      assert args.loop == True
      assert args.interval == 30

   def test_database_cleanup(self):
      args = create_parser().parse_args(["database", "cleanup", "--days", "30", "--force"])
      assert args.database_action == "cleanup"
      assert args.days == 30
      assert args.force == True

   def test_naive_timestamp_is_utc(self):
      parsed = parse_datetime("2024-03-01T12:00:00")
      assert parsed.tzinfo == timezone.utc


class TestCommands:
   """Test command dispatch"""

   def test_no_command(self, config_file):
      assert main(["-c", config_file, "-q"]) == 1

   def test_config_show(self, config_file, capsys):
      assert main(["-c", config_file, "-q", "config", "--show"]) == 0
      assert "Prometheus URL: not configured" in capsys.readouterr().out

   def test_job_json(self, config_file, capsys):
      stats = JobGPUStats("42", 55.0, 70.0, 40.0, 4, StatsSource.PRECOMPUTED)
      monitor = mock_monitor(read_job=ReadResult.found(stats, []))

      with patch('gpu_monitor.cli.main.GPUMonitor', return_value=monitor):
         assert main(["-c", config_file, "-q", "job", "42", "--format", "json"]) == 0

      data = json.loads(capsys.readouterr().out)
      assert data['jobId'] == "42"
      assert data['source'] == "precomputed"
      monitor.reader.read_job.assert_called_once_with("42")

   def test_job_not_configured(self, config_file, capsys):
      monitor = mock_monitor(read_job=ReadResult(ReadStatus.NOT_CONFIGURED, errors=["nothing"]))

      with patch('gpu_monitor.cli.main.GPUMonitor', return_value=monitor):
         assert main(["-c", config_file, "-q", "--no-color", "job", "42"]) == 1

      assert "no metrics backend or database configured" in capsys.readouterr().out

   def test_capture_rate_limited(self, config_file, capsys):
      monitor = Mock()
      monitor.database_enabled = True
      monitor.capture.return_value = CaptureResult(rate_limited=True, next_capture_in=42)

      with patch('gpu_monitor.cli.main.GPUMonitor', return_value=monitor):
         assert main(["-c", config_file, "-q", "capture"]) == 0

      assert "next capture in 42s" in capsys.readouterr().out

   def test_invalid_time_range(self, config_file, capsys):
      monitor = Mock()
      monitor.reader.read_fleet_report.side_effect = ValueError("Invalid time range: 'x'")

      with patch('gpu_monitor.cli.main.GPUMonitor', return_value=monitor):
         assert main(["-c", config_file, "-q", "report", "-t", "x"]) == 1

      assert "Invalid time range" in capsys.readouterr().out

   def test_status_reports_failures(self, config_file, capsys):
      monitor = Mock()
      monitor.test_connections.return_value = {'prometheus': False, 'slurm': None, 'database': True}

      with patch('gpu_monitor.cli.main.GPUMonitor', return_value=monitor):
         assert main(["-c", config_file, "-q", "--no-color", "status"]) == 1

      out = capsys.readouterr().out
      assert "FAILED" in out
      assert "not configured" in out

   def test_database_init_and_validate(self, config_file, capsys):
      assert main(["-c", config_file, "-q", "database", "init"]) == 0
      assert main(["-c", config_file, "-q", "database", "validate"]) == 0
      assert "PASS" in capsys.readouterr().out

   def test_database_cleanup_dry_run(self, config_file, capsys):
      main(["-c", config_file, "-q", "database", "init"])
      assert main(["-c", config_file, "-q", "database", "cleanup", "--dry-run"]) == 0
      assert "Would remove 0 completed job records" in capsys.readouterr().out
