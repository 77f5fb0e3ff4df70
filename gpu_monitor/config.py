"""
Configuration management for GPU Monitor
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass


@dataclass
class PrometheusConfig:
   """Metrics backend (Prometheus) configuration"""

   # Base URL of the Prometheus server, e.g. http://prometheus:9090
   url: Optional[str] = None

   # Per-query timeout (seconds)
   query_timeout: int = 10

   # DCGM exporter metric names
   utilization_metric: str = "DCGM_FI_DEV_GPU_UTIL"
   memory_used_metric: str = "DCGM_FI_DEV_FB_USED"
   memory_free_metric: str = "DCGM_FI_DEV_FB_FREE"

   # Label names used when building selectors
   job_label: str = "hpc_job"
   hostname_label: str = "Hostname"

   # Worker threads for concurrent queries
   max_workers: int = 8


@dataclass
class SlurmConfig:
   """Workload manager (Slurm REST API) configuration"""

   server: Optional[str] = None
   protocol: str = "http"
   port: int = 6820
   api_version: str = "v0.0.40"
   api_account: Optional[str] = None
   api_token: Optional[str] = None

   # Request timeout (seconds)
   request_timeout: int = 10


@dataclass
class CaptureConfig:
   """Ingest cycle configuration"""

   # Minimum seconds between two capture cycles
   min_capture_interval: int = 60

   # Jobs silent for longer than this are marked complete
   completion_grace_minutes: int = 10

   # Lookback used by the freshness check (seconds)
   freshness_window: int = 120

   # Interval used by `gpu-monitor capture --loop` (seconds)
   loop_interval: int = 60


@dataclass
class ReportConfig:
   """Fleet report configuration"""

   default_time_range: str = "7d"

   # Duration assumed for a job when no measured duration is available.
   # None means such jobs contribute no wasted GPU-hours.
   assumed_job_duration_hours: Optional[float] = None


@dataclass
class DisplayConfig:
   """Display and output configuration"""

   max_table_width: int = 120
   auto_width: bool = True  # Auto-detect terminal width
   min_column_width: int = 6
   max_column_width: int = 40
   expand_columns: bool = True
   word_wrap: bool = False

   # Color output
   use_colors: bool = True

   # Time format
   time_format: str = "%d-%m %H:%M"


@dataclass
class DatabaseConfig:
   """Aggregate store configuration"""

   # Database URL
   url: str = "sqlite:///~/.gpu_monitor.db"

   # Connection settings
   pool_size: int = 5
   max_overflow: int = 10
   echo_sql: bool = False
   connect_timeout: int = 30

   # Housekeeping: completed rows older than this are removed by `database cleanup`
   completed_retention_days: int = 90


@dataclass
class LoggingConfig:
   """Logging configuration"""

   # Log level
   level: str = "INFO"

   # Log file path
   log_file: Optional[str] = None

   # Log format
   log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

   date_format: str = "%d-%m %H:%M"


# Environment variables that override file settings: (section, attribute)
ENVIRONMENT_OVERRIDES = {
   'PROMETHEUS_URL': ('prometheus', 'url'),
   'SLURM_SERVER': ('slurm', 'server'),
   'SLURM_PROTOCOL': ('slurm', 'protocol'),
   'SLURM_API_VERSION': ('slurm', 'api_version'),
   'SLURM_API_ACCOUNT': ('slurm', 'api_account'),
   'SLURM_API_TOKEN': ('slurm', 'api_token'),
   'GPU_MONITOR_DB_URL': ('database', 'url'),
}

SECTIONS = ('prometheus', 'slurm', 'capture', 'report', 'display', 'logging', 'database')


class Config:
   """Main configuration manager"""

   def __init__(self, config_file: Optional[str] = None, use_environment: bool = True):
      """
      Initialize configuration

      Args:
         config_file: Path to configuration file
         use_environment: Apply environment variable overrides after loading the file
      """
      self.config_file = config_file or self._get_default_config_path()
      self.logger = logging.getLogger(__name__)

      # Initialize default configurations
      self.prometheus = PrometheusConfig()
      self.slurm = SlurmConfig()
      self.capture = CaptureConfig()
      self.report = ReportConfig()
      self.display = DisplayConfig()
      self.logging = LoggingConfig()
      self.database = DatabaseConfig()

      # Load configuration from file
      self._load_config()

      if use_environment:
         self._apply_environment()

   def _get_default_config_path(self) -> str:
      """Get default configuration file path"""
      # Try these locations in order
      config_paths = [
         os.path.expanduser("~/.gpu_monitor.yaml"),
         os.path.expanduser("~/.config/gpu_monitor/config.yaml"),
         "/etc/gpu_monitor/config.yaml",
         "gpu_monitor.yaml"
      ]

      for path in config_paths:
         if os.path.exists(path):
            return path

      # Return first path as default
      return config_paths[0]

   def _load_config(self) -> None:
      """Load configuration from file"""
      if not os.path.exists(self.config_file):
         self.logger.debug(f"Configuration file not found: {self.config_file}")
         return

      try:
         with open(self.config_file, 'r') as f:
            config_data = yaml.safe_load(f)

         if not config_data:
            return

         for section in SECTIONS:
            if section in config_data and isinstance(config_data[section], dict):
               self._update_config_object(getattr(self, section), config_data[section])

         self.logger.info(f"Configuration loaded from {self.config_file}")

      except (OSError, yaml.YAMLError) as e:
         self.logger.error(f"Failed to load configuration: {str(e)}")

   def _apply_environment(self) -> None:
      """Apply environment variable overrides"""
      for env_name, (section, attribute) in ENVIRONMENT_OVERRIDES.items():
         value = os.environ.get(env_name)
         if value:
            setattr(getattr(self, section), attribute, value)
            self.logger.debug(f"Using {env_name} for {section}.{attribute}")

   def _update_config_object(self, config_obj: Any, config_data: Dict[str, Any]) -> None:
      """Update configuration object with data from file"""
      for key, value in config_data.items():
         if hasattr(config_obj, key):
            setattr(config_obj, key, value)

   def save_config(self) -> None:
      """Save current configuration to file"""
      try:
         # Create directory if it doesn't exist
         config_dir = os.path.dirname(self.config_file)
         if config_dir:
            os.makedirs(config_dir, exist_ok=True)

         config_data = {section: self._config_to_dict(getattr(self, section)) for section in SECTIONS}

         with open(self.config_file, 'w') as f:
            yaml.dump(config_data, f, default_flow_style=False, indent=2)

         self.logger.info(f"Configuration saved to {self.config_file}")

      except (OSError, yaml.YAMLError) as e:
         self.logger.error(f"Failed to save configuration: {str(e)}")

   def _config_to_dict(self, config_obj: Any) -> Dict[str, Any]:
      """Convert configuration object to dictionary"""
      if hasattr(config_obj, '__dict__'):
         return {k: v for k, v in config_obj.__dict__.items() if not k.startswith('_')}
      return {}

   def create_sample_config(self) -> None:
      """Create a sample configuration file"""
      sample_config = {
         'prometheus': {
            'url': 'http://prometheus:9090',
            'query_timeout': 10,
            'utilization_metric': 'DCGM_FI_DEV_GPU_UTIL',
            'memory_used_metric': 'DCGM_FI_DEV_FB_USED',
            'memory_free_metric': 'DCGM_FI_DEV_FB_FREE',
            'job_label': 'hpc_job',
            'hostname_label': 'Hostname',
            'max_workers': 8
         },
         'slurm': {
            'server': 'slurmctld',
            'protocol': 'http',
            'port': 6820,
            'api_version': 'v0.0.40',
            'api_account': 'slurm',
            'api_token': None,
            'request_timeout': 10
         },
         'capture': {
            'min_capture_interval': 60,
            'completion_grace_minutes': 10,
            'freshness_window': 120,
            'loop_interval': 60
         },
         'report': {
            'default_time_range': '7d',
            'assumed_job_duration_hours': None
         },
         'display': {
            'max_table_width': 120,
            'auto_width': True,
            'min_column_width': 6,
            'max_column_width': 40,
            'expand_columns': True,
            'word_wrap': False,
            'use_colors': True,
            'time_format': '%d-%m %H:%M'
         },
         'logging': {
            'level': 'INFO',
            'log_file': None,
            'log_format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'date_format': '%d-%m %H:%M'
         },
         'database': {
            'url': 'sqlite:///~/.gpu_monitor.db',
            'pool_size': 5,
            'max_overflow': 10,
            'echo_sql': False,
            'connect_timeout': 30,
            'completed_retention_days': 90
         }
      }

      try:
         config_dir = os.path.dirname(self.config_file)
         if config_dir:
            os.makedirs(config_dir, exist_ok=True)

         with open(self.config_file, 'w') as f:
            yaml.dump(sample_config, f, default_flow_style=False, indent=2)

         print(f"Sample configuration created at {self.config_file}")

      except (OSError, yaml.YAMLError) as e:
         print(f"Failed to create sample configuration: {str(e)}")

   def get_log_level(self) -> int:
      """Get numeric log level"""
      level_map = {
         'DEBUG': logging.DEBUG,
         'INFO': logging.INFO,
         'WARNING': logging.WARNING,
         'ERROR': logging.ERROR,
         'CRITICAL': logging.CRITICAL
      }

      return level_map.get(self.logging.level.upper(), logging.INFO)

   def __str__(self) -> str:
      return f"Config(file={self.config_file})"
