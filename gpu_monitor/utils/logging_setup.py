"""
Logging configuration for GPU Monitor
"""

import logging
import logging.handlers
import sys
from typing import Dict, Optional
from pathlib import Path


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%d-%m %H:%M"

# Rotating log file: 10 MB, 5 backups
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Client libraries that log every request at DEBUG/INFO
CHATTY_LOGGERS = ('urllib3', 'requests')


def _file_handler(log_file: str, formatter: logging.Formatter) -> Optional[logging.Handler]:
   try:
      Path(log_file).parent.mkdir(parents=True, exist_ok=True)
      handler = logging.handlers.RotatingFileHandler(
         log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
      )
   except OSError as e:
      logging.getLogger(__name__).error(f"Cannot write log file {log_file}: {str(e)}")
      return None
   handler.setFormatter(formatter)
   return handler


def setup_logging(
   level: int = logging.INFO,
   log_file: Optional[str] = None,
   log_format: Optional[str] = None,
   date_format: Optional[str] = None,
   console_output: bool = True
) -> None:
   """
   Configure the root logger for a gpu-monitor run

   Replaces any existing handlers. Console output goes to stdout; the
   optional log file rotates. HTTP client libraries are held at WARNING
   unless DEBUG is requested.

   Args:
      level: Logging level (default: INFO)
      log_file: Path to a log file (optional)
      log_format: Record format (default: time - name - level - message)
      date_format: Timestamp format (default: DD-MM HH:MM)
      console_output: Log to stdout (default: True)
   """
   formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT,
                                 datefmt=date_format or DEFAULT_DATE_FORMAT)

   root = logging.getLogger()
   root.setLevel(level)
   root.handlers.clear()

   handlers = []
   if console_output:
      handlers.append(logging.StreamHandler(sys.stdout))
   if log_file:
      handlers.append(_file_handler(log_file, formatter))

   for handler in handlers:
      if handler is None:
         continue
      handler.setLevel(level)
      handler.setFormatter(formatter)
      root.addHandler(handler)

   library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
   for name in CHATTY_LOGGERS:
      logging.getLogger(name).setLevel(library_level)


class GPULoggerAdapter(logging.LoggerAdapter):
   """Prefixes each message with its non-empty context, e.g. [job_id=42]"""

   def __init__(self, logger: logging.Logger, extra: Optional[Dict] = None):
      super().__init__(logger, extra or {})

   def process(self, msg, kwargs):
      context = ", ".join(f"{key}={value}" for key, value in self.extra.items()
                          if value is not None)
      if context:
         msg = f"[{context}] {msg}"
      return msg, kwargs


def create_gpu_logger(name: str, **context) -> GPULoggerAdapter:
   """
   Logger for `name` carrying fixed context

   Args:
      name: Logger name, usually __name__
      **context: key=value pairs shown in front of every message

   Returns:
      GPULoggerAdapter instance
   """
   return GPULoggerAdapter(logging.getLogger(name), context)
