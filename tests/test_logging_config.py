"""Unit tests for logging configuration module."""
import logging
import logging.handlers
from unittest.mock import patch

import pytest

from app import logging_config


class TestUnifiedLogger:
    """Test UnifiedLogger class."""

    @pytest.fixture(autouse=True)
    def reset(self):
        """Reset configuration state around each test."""
        root_logger = logging.getLogger()
        saved_handlers, saved_level = list(root_logger.handlers), root_logger.level
        logging_config.UnifiedLogger._configured = False
        root_logger.handlers.clear()
        yield
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers[:] = saved_handlers
        root_logger.setLevel(saved_level)
        logging_config.UnifiedLogger._configured = True

    def test_configure_basic(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        assert logging_config.UnifiedLogger._configured is True
        assert len(logging.getLogger().handlers) == 2

    def test_configure_with_custom_level(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_level="DEBUG", log_dir=tmp_path)
        assert logging.getLogger().level == logging.DEBUG

    def test_configure_with_custom_log_file(self, tmp_path):
        log_file = tmp_path / "custom.log"
        logging_config.UnifiedLogger.configure(log_file=log_file)
        assert log_file.exists()

    def test_configure_with_custom_log_dir(self, tmp_path):
        log_dir = tmp_path / "custom_logs"
        logging_config.UnifiedLogger.configure(log_dir=log_dir)
        assert (log_dir / "qvm.log").exists()

    def test_configure_with_env_vars(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QVM_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("QVM_LOG_DIR", str(tmp_path))
        logging_config.UnifiedLogger.configure()
        assert logging.getLogger().level == logging.WARNING
        assert (tmp_path / "qvm.log").exists()

    def test_configure_with_env_log_file(self, tmp_path, monkeypatch):
        log_file = tmp_path / "env.log"
        monkeypatch.setenv("QVM_LOG_FILE", str(log_file))
        logging_config.UnifiedLogger.configure()
        assert log_file.exists()

    def test_configure_with_env_rotation_settings(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QVM_LOG_MAX_BYTES", "2048")
        monkeypatch.setenv("QVM_LOG_BACKUP_COUNT", "2")
        logging_config.UnifiedLogger.configure(log_file=tmp_path / "rotated.log")
        [file_handler] = [h for h in logging.getLogger().handlers
                          if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert file_handler.maxBytes == 2048
        assert file_handler.backupCount == 2

    def test_configure_file_handler_error(self, tmp_path):
        """A log file that cannot be opened leaves console logging in place."""
        with patch('app.logging_config.logging.handlers.RotatingFileHandler',
                   side_effect=PermissionError("Permission denied")):
            logging_config.UnifiedLogger.configure(log_file=tmp_path / "error.log")
        assert logging_config.UnifiedLogger._configured is True
        assert len(logging.getLogger().handlers) == 1

    def test_configure_idempotent(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        first_handlers = len(logging.getLogger().handlers)
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        assert len(logging.getLogger().handlers) == first_handlers

    def test_configure_invalid_log_level(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_level="INVALID", log_dir=tmp_path)
        assert logging.getLogger().level == logging.INFO

    @pytest.mark.parametrize("module,expected", [
        ("app.main", "API.main"),
        ("app.disks", "DISKS.disks"),
        ("app.vms", "VMS.vms"),
        ("app.metadata_store", "VMS.metadata_store"),
        ("app.supervisor", "SUPERVISOR.supervisor"),
        ("app.observer", "OBSERVER.observer"),
        ("app.unknown", "unknown"),
    ])
    def test_get_logger_infers_service(self, tmp_path, module, expected):
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        assert logging_config.UnifiedLogger.get_logger(module).name == expected

    def test_get_logger_with_service(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        logger = logging_config.UnifiedLogger.get_logger("test_module", "DISKS")
        assert logger.name == "DISKS.test_module"

    def test_get_logger_auto_configure(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QVM_LOG_DIR", str(tmp_path))
        logger = logging_config.UnifiedLogger.get_logger("test")
        assert logging_config.UnifiedLogger._configured is True
        assert logger is not None

    def test_log_request(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, 'info') as mock_info:
            logging_config.UnifiedLogger.log_request(logger, "GET", "/disks", 200, 123.45)
            logging_config.UnifiedLogger.log_request(logger, "POST", "/vms", 400)
        assert mock_info.call_args_list[0][0][0] == "HTTP GET /disks -> 200 (123.45ms)"
        assert mock_info.call_args_list[1][0][0] == "HTTP POST /vms -> 400"

    def test_log_error(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, 'error') as mock_error:
            logging_config.UnifiedLogger.log_error(
                logger, "delete vm1", ValueError("boom"), {"pid": 4000}
            )
            logging_config.UnifiedLogger.log_error(logger, "delete vm1", ValueError("boom"))
        assert "Context:" in mock_error.call_args_list[0][0][0]
        assert "Context:" not in mock_error.call_args_list[1][0][0]

    def test_log_coherence_issue(self, tmp_path):
        logging_config.UnifiedLogger.configure(log_dir=tmp_path)
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, 'warning') as mock_warning:
            logging_config.UnifiedLogger.log_coherence_issue(
                logger, "stale_pid", "vm1", "Record has PID 4000 but the process is not running"
            )
        message = mock_warning.call_args[0][0]
        assert "stale_pid" in message
        assert "vm1" in message

    def test_service_constants(self):
        assert logging_config.UnifiedLogger.SERVICE_API == "API"
        assert logging_config.UnifiedLogger.SERVICE_DISKS == "DISKS"
        assert logging_config.UnifiedLogger.SERVICE_VMS == "VMS"
        assert logging_config.UnifiedLogger.SERVICE_SUPERVISOR == "SUPERVISOR"
        assert logging_config.UnifiedLogger.SERVICE_OBSERVER == "OBSERVER"
