"""Unified logging configuration for the QVM control plane.

Every module obtains its logger through UnifiedLogger so that the API, the
disk and VM managers, the process supervisor and the observer all share one
format and one set of handlers. Includes log rotation to prevent large log
files.
"""
import logging
import logging.handlers
import sys
import os
from pathlib import Path
from typing import Optional


class UnifiedLogger:
    """Unified logger configuration for QVM services."""

    # Service identifiers
    SERVICE_API = "API"
    SERVICE_DISKS = "DISKS"
    SERVICE_VMS = "VMS"
    SERVICE_SUPERVISOR = "SUPERVISOR"
    SERVICE_OBSERVER = "OBSERVER"

    _configured = False

    @classmethod
    def configure(
        cls,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        service_name: str = "QVM",
        max_bytes: int = 10 * 1024 * 1024,  # 10MB default
        backup_count: int = 5
    ) -> None:
        """Configure unified logging for all services.

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
                      Defaults to INFO, or QVM_LOG_LEVEL env var.
            log_file: Path to log file. If None, uses QVM_LOG_FILE env var or
                     creates qvm.log in log_dir.
            log_dir: Directory for log files. Defaults to ./logs or QVM_LOG_DIR.
            service_name: Service name prefix for logs.
            max_bytes: Maximum log file size in bytes before rotation (default: 10MB).
                      Can be set via QVM_LOG_MAX_BYTES env var.
            backup_count: Number of backup log files to keep (default: 5).
                         Can be set via QVM_LOG_BACKUP_COUNT env var.
        """
        if cls._configured:
            return

        level_str = (log_level or os.environ.get("QVM_LOG_LEVEL", "INFO")).upper()
        level = logging.getLevelName(level_str)
        if not isinstance(level, int):
            level = logging.INFO

        max_bytes = int(os.environ.get("QVM_LOG_MAX_BYTES", str(max_bytes)))
        backup_count = int(os.environ.get("QVM_LOG_BACKUP_COUNT", str(backup_count)))

        if log_file:
            log_path = Path(log_file)
        elif os.environ.get("QVM_LOG_FILE"):
            log_path = Path(os.environ["QVM_LOG_FILE"])
        else:
            log_dir = Path(log_dir or os.environ.get("QVM_LOG_DIR", "./logs"))
            log_path = log_dir / "qvm.log"

        formatter = logging.Formatter(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        # Remove existing handlers to avoid duplicates
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                mode='a',
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

            max_mb = max_bytes / (1024 * 1024)
            logging.info(
                f"Logging to file: {log_path} "
                f"(rotation: {max_mb:.1f}MB, backups: {backup_count})"
            )
        except OSError as e:
            logging.warning(f"Failed to create file handler: {e}")

        cls._configured = True
        logging.info(f"Unified logging configured (level={level_str}, service={service_name})")

    @classmethod
    def get_logger(cls, module_name: str, service: Optional[str] = None) -> logging.Logger:
        """Get a logger for a module with service identification.

        Args:
            module_name: Module name (typically __name__).
            service: Service identifier (API, DISKS, VMS, SUPERVISOR, OBSERVER).
                    If None, attempts to infer from module name.

        Returns:
            Configured logger instance.
        """
        if not cls._configured:
            cls.configure()

        short_name = module_name.split('.')[-1]
        if not service:
            inferred = {
                "main": cls.SERVICE_API,
                "disks": cls.SERVICE_DISKS,
                "vms": cls.SERVICE_VMS,
                "metadata_store": cls.SERVICE_VMS,
                "supervisor": cls.SERVICE_SUPERVISOR,
                "observer": cls.SERVICE_OBSERVER,
            }
            service = inferred.get(short_name)

        if service:
            logger_name = f"{service}.{short_name}"
        else:
            logger_name = short_name

        return logging.getLogger(logger_name)

    @classmethod
    def log_request(cls, logger: logging.Logger, method: str, path: str,
                    status_code: int, duration_ms: Optional[float] = None):
        """Log HTTP request in unified format."""
        duration_str = f" ({duration_ms:.2f}ms)" if duration_ms else ""
        logger.info(f"HTTP {method} {path} -> {status_code}{duration_str}")

    @classmethod
    def log_error(cls, logger: logging.Logger, operation: str, error: Exception,
                  context: Optional[dict] = None):
        """Log error in unified format.

        Args:
            logger: Logger instance.
            operation: Operation that failed.
            error: Exception that occurred.
            context: Additional context dictionary (optional).
        """
        context_str = f" | Context: {context}" if context else ""
        logger.error(f"{operation} failed: {error}{context_str}", exc_info=True)

    @classmethod
    def log_coherence_issue(cls, logger: logging.Logger, issue_type: str,
                            resource_id: str, details: str):
        """Log a mismatch between a VM record and the host in unified format."""
        logger.warning(f"Coherence issue [{issue_type}] {resource_id}: {details}")
