"""
Unit tests for centralized logging system.

Tests cover:
- Structured JSON logging format
- Context variables (order_id, box_index, operator_id)
- Log directory and daily file creation
- Cleanup of old log files
"""

import configparser
import json
import logging
import os
import sys
import time
from datetime import datetime
from unittest.mock import patch

import pytest

from logger import (
    AppLogger,
    StructuredJSONFormatter,
    get_logger,
    set_box_context,
    set_operator_context,
    set_order_context,
    clear_logging_context,
)


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="TestLogger",
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
        func="test_function"
    )


def logging_config(log_dir, level='INFO', retention_days=30):
    config = configparser.ConfigParser()
    config.add_section('Logging')
    config.set('Logging', 'LogDir', str(log_dir))
    config.set('Logging', 'LogLevel', level)
    config.set('Logging', 'LogRetentionDays', str(retention_days))
    return config


def close_root_handlers():
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


class TestStructuredJSONFormatter:
    """Test the JSON formatter for structured logging."""

    def test_basic_json_format(self):
        log_data = json.loads(StructuredJSONFormatter().format(make_record()))

        assert log_data["level"] == "INFO"
        assert log_data["tool"] == "order_assembly"
        assert log_data["module"] == "TestLogger"
        assert log_data["function"] == "test_function"
        assert log_data["line"] == 42
        assert log_data["message"] == "Test message"
        datetime.fromisoformat(log_data["timestamp"])

    def test_json_format_with_context(self):
        set_order_context("SO-1042")
        set_box_context(1)
        set_operator_context("op-7")
        try:
            log_data = json.loads(StructuredJSONFormatter().format(make_record()))
        finally:
            clear_logging_context()

        assert log_data["order_id"] == "SO-1042"
        assert log_data["box_index"] == 1
        assert log_data["operator_id"] == "op-7"

    def test_json_format_without_context(self):
        clear_logging_context()
        log_data = json.loads(StructuredJSONFormatter().format(make_record()))
        assert log_data["order_id"] is None
        assert log_data["box_index"] is None

    def test_json_format_with_exception(self):
        try:
            raise ValueError("Test exception")
        except ValueError:
            exc_info = sys.exc_info()

        log_data = json.loads(StructuredJSONFormatter().format(
            make_record("Error occurred", logging.ERROR, exc_info)))

        assert "ValueError" in log_data["exc_info"]
        assert "Test exception" in log_data["exc_info"]


class TestContextVariables:
    """Test context variable management."""

    def test_clear_logging_context(self):
        set_order_context("SO-1042")
        set_box_context(0)
        set_operator_context("op-7")

        clear_logging_context()

        from logger import _order_id, _box_index, _operator_id
        assert _order_id.get() is None
        assert _box_index.get() is None
        assert _operator_id.get() is None

    def test_box_zero_is_kept(self):
        set_box_context(0)
        from logger import _box_index
        assert _box_index.get() == 0
        clear_logging_context()


class TestAppLogger:
    """Test AppLogger class and logging setup."""

    @pytest.fixture(autouse=True)
    def reset_logger(self):
        """Reset logger state before and after each test."""
        AppLogger._initialized = False
        close_root_handlers()
        yield
        close_root_handlers()
        AppLogger._initialized = False

    def test_creates_log_directory_and_file(self, tmp_path):
        log_dir = tmp_path / "logs"
        with patch('logger.AppLogger._load_config', return_value=logging_config(log_dir)):
            logger = get_logger("Test")
            logger.info("Test message")

        close_root_handlers()
        assert log_dir.is_dir()
        assert (log_dir / f"{datetime.now():%Y-%m-%d}.log").exists()

    def test_writes_json_lines(self, tmp_path):
        with patch('logger.AppLogger._load_config', return_value=logging_config(tmp_path)):
            logger = get_logger("Test")
            set_order_context("SO-7")
            logger.info("JSON test message")
            clear_logging_context()

        close_root_handlers()
        lines = (tmp_path / f"{datetime.now():%Y-%m-%d}.log").read_text(encoding='utf-8').splitlines()
        log_data = json.loads(lines[-1])
        assert log_data["message"] == "JSON test message"
        assert log_data["order_id"] == "SO-7"
        assert log_data["tool"] == "order_assembly"

    def test_log_level_from_config(self, tmp_path):
        with patch('logger.AppLogger._load_config', return_value=logging_config(tmp_path, level='WARNING')):
            get_logger("Test")
        assert logging.getLogger().level == logging.WARNING

    def test_configured_once(self, tmp_path):
        with patch('logger.AppLogger._load_config', return_value=logging_config(tmp_path)) as mock_config:
            get_logger("Test1")
            get_logger("Test2")
        assert mock_config.call_count == 1

    def test_cleanup_old_logs(self, tmp_path):
        old_log = tmp_path / "2020-01-01.log"
        old_log.write_text("{}")
        old_time = time.time() - 40 * 86400
        os.utime(old_log, (old_time, old_time))
        recent_log = tmp_path / "recent.log"
        recent_log.write_text("{}")

        AppLogger._cleanup_old_logs(tmp_path, retention_days=30)

        assert not old_log.exists()
        assert recent_log.exists()

    def test_cleanup_disabled(self, tmp_path):
        old_log = tmp_path / "2020-01-01.log"
        old_log.write_text("{}")
        old_time = time.time() - 400 * 86400
        os.utime(old_log, (old_time, old_time))

        AppLogger._cleanup_old_logs(tmp_path, retention_days=0)

        assert old_log.exists()

    def test_missing_config_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = AppLogger._load_config()
        assert config.sections() == []
