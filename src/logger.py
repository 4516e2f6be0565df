"""
Centralized logging configuration for the Order Assembly Tool.

This module provides the logging system shared by every engine component:
- Structured JSON log files for later analysis of assembly sessions
- Automatic size-based rotation and age-based cleanup
- Configurable log level from config.ini
- Human-readable console output for the operator workstation
- Context-aware records (order_id, box_index, operator_id)

Log file location: [Logging] LogDir in config.ini, or ~/.order_assembly/logs
Log file format: YYYY-MM-DD.log

Example log entry (JSON format):
    {"timestamp": "2026-03-02T09:12:45.120", "level": "INFO", "tool": "order_assembly",
     "order_id": "SO-1042", "box_index": 0, "operator_id": "op-7",
     "module": "assembly_engine", "function": "handle_reading", "line": 310,
     "message": "Item product_0_1 verified: 0.860 kg (expected 0.860 ± 0.020)"}
"""

import logging
import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
import configparser
from contextvars import ContextVar


# Context variables for structured logging
_order_id: ContextVar[Optional[str]] = ContextVar('order_id', default=None)
_box_index: ContextVar[Optional[int]] = ContextVar('box_index', default=None)
_operator_id: ContextVar[Optional[str]] = ContextVar('operator_id', default=None)

CONFIG_FILE_NAME = 'config.ini'


class StructuredJSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON with fields:
    - timestamp: ISO 8601 format
    - level: Log level name
    - tool: Always "order_assembly"
    - order_id, box_index, operator_id: Current context (if set)
    - module, function, line: Origin of the record
    - message: Log message
    - exc_info: Formatted traceback (if present)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'tool': 'order_assembly',
            'order_id': _order_id.get(),
            'box_index': _box_index.get(),
            'operator_id': _operator_id.get(),
            'module': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False)


class AppLogger:
    """
    Centralized application logger with file rotation and cleanup.

    Logging is configured once, on the first get_logger() call, no matter how
    many modules import the logger. Settings come from the [Logging] section
    of config.ini:
    - LogDir: Directory for log files
    - LogLevel: DEBUG, INFO, WARNING, ERROR, CRITICAL
    - MaxLogSizeMB: Maximum size per log file before rotation
    - LogRetentionDays: How many days of logs to keep

    Attributes:
        _initialized: Whether logging has been configured (class-level)
        _log_dir: Directory chosen during setup (class-level)
    """

    _initialized: bool = False
    _log_dir: Optional[Path] = None

    @classmethod
    def get_logger(cls, name: str = 'OrderAssembly') -> logging.Logger:
        """
        Get or create an application logger with lazy initialization.

        Usage in modules:
            from logger import get_logger
            logger = get_logger(__name__)
            logger.info("Order loaded")

        Args:
            name: Logger name, typically the module name (__name__)

        Returns:
            Configured logger instance for the specified name
        """
        if not cls._initialized:
            cls._setup_logging()
            cls._initialized = True

        return logging.getLogger(name)

    @classmethod
    def _setup_logging(cls):
        """
        Configure root logging from config.ini.

        Sets up:
        1. Log directory (config value or local fallback)
        2. Log level
        3. JSON file handler with rotation
        4. Console handler with readable format
        5. Cleanup of logs older than the retention period
        """
        config = cls._load_config()

        default_dir = Path(os.path.expanduser("~")) / ".order_assembly" / "logs"
        log_dir = Path(config.get('Logging', 'LogDir', fallback=str(default_dir)))

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Fallback to the home directory if the configured path is not writable
            log_dir = default_dir
            log_dir.mkdir(parents=True, exist_ok=True)
            print(f"Warning: Could not use log directory from config. Using local: {log_dir}. Error: {e}")

        cls._log_dir = log_dir
        log_file = log_dir / f"{datetime.now():%Y-%m-%d}.log"

        log_level_str = config.get('Logging', 'LogLevel', fallback='INFO')
        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        max_log_size = config.getint('Logging', 'MaxLogSizeMB', fallback=10) * 1024 * 1024

        json_formatter = StructuredJSONFormatter()

        # Format: timestamp | module | level | function:line | message
        console_formatter = logging.Formatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_log_size,
            backupCount=30,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(json_formatter)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

        retention_days = config.getint('Logging', 'LogRetentionDays', fallback=30)
        cls._cleanup_old_logs(log_dir, retention_days)

        logger = logging.getLogger('OrderAssembly')
        logger.info("=" * 80)
        logger.info("Order Assembly Tool Started")
        logger.info(f"Log Level: {log_level_str}")
        logger.info(f"Log File: {log_file}")
        logger.info("=" * 80)

    @staticmethod
    def _load_config() -> configparser.ConfigParser:
        """
        Load the [Logging] settings from config.ini in the working directory.

        Returns an empty ConfigParser when the file does not exist, so every
        setting falls back to its default (INFO level, 10MB files, 30 days).
        """
        config = configparser.ConfigParser()
        config_path = Path(CONFIG_FILE_NAME)

        if config_path.exists():
            config.read(config_path, encoding='utf-8')

        return config

    @staticmethod
    def _cleanup_old_logs(log_dir: Path, retention_days: int):
        """
        Delete log files older than the retention period.

        Args:
            log_dir: Directory containing log files
            retention_days: Number of days to keep logs; 0 or negative keeps all
        """
        if retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=retention_days)

        try:
            for log_file in log_dir.glob("*.log*"):
                file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
                if file_mtime < cutoff_date:
                    log_file.unlink()
                    logging.getLogger('OrderAssembly').debug(f"Deleted old log: {log_file.name}")

        except OSError as e:
            # Non-fatal: a locked or vanished file must not stop the application
            logging.getLogger('OrderAssembly').warning(f"Failed to cleanup old logs: {e}")


def get_logger(name: str = 'OrderAssembly') -> logging.Logger:
    """
    Get application logger.

    Example:
        >>> from logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Scale connected")
    """
    return AppLogger.get_logger(name)


def set_order_context(order_id: Optional[str]) -> None:
    """
    Set the current order ID for structured logging context.

    Every record logged afterwards in this execution context carries the
    order_id, which makes it easy to reconstruct one order's assembly from the
    daily log file.

    Args:
        order_id: Order identifier (e.g., "SO-1042") or None to clear
    """
    _order_id.set(order_id)


def set_box_context(box_index: Optional[int]) -> None:
    """
    Set the active box index for structured logging context.

    Args:
        box_index: Zero-based box index or None to clear
    """
    _box_index.set(box_index)


def set_operator_context(operator_id: Optional[str]) -> None:
    """Set the operator working at this station for structured logging context."""
    _operator_id.set(operator_id)


def clear_logging_context() -> None:
    """
    Clear all logging context (order_id, box_index, operator_id).

    Called on order switch so records of the next order never carry the
    previous order's identifiers.
    """
    _order_id.set(None)
    _box_index.set(None)
    _operator_id.set(None)
