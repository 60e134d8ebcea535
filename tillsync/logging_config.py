# Logging configuration - rotating file log, console output and error alerting
# for the TillSync reconciliation core

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
LOG_FILE = LOG_DIR / "tillsync.log"
LOG_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Called with (message, level) whenever an ERROR or CRITICAL record is emitted,
# e.g. to page whoever looks after the store server
_error_alert_callback: Optional[Callable[[str, str], None]] = None


def set_error_alert_callback(callback: Optional[Callable[[str, str], None]]):
    """Set (or clear) the callback(message, level) used for error alerting."""
    global _error_alert_callback
    _error_alert_callback = callback


class ErrorAlertHandler(logging.Handler):
    """Handler that invokes the alert callback on ERROR and CRITICAL."""

    def emit(self, record: logging.LogRecord):
        if record.levelno >= logging.ERROR and _error_alert_callback:
            try:
                msg = self.format(record)
                _error_alert_callback(msg, record.levelname)
            except Exception:
                self.handleError(record)


def setup_logging(
    log_path: Optional[Path] = None,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
    console: bool = True,
    level: int = logging.INFO,
) -> None:
    """
    Configure root logging with a rotating file, optional console and alerting.

    Safe to call more than once: existing root handlers are replaced.
    """
    log_path = Path(log_path or LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    alert_handler = ErrorAlertHandler()
    alert_handler.setLevel(logging.ERROR)
    alert_handler.setFormatter(formatter)
    root.addHandler(alert_handler)


def level_from_name(name: Optional[str], default: int = logging.INFO) -> int:
    """Map a config string such as 'debug' or 'WARNING' to a logging level."""
    if not name:
        return default
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else default


def apply_module_levels(levels: Optional[Dict[str, str]]) -> None:
    """Set per-logger levels, e.g. {'tillsync.sync_client': 'DEBUG', 'urllib3': 'WARNING'}."""
    for name, level_name in (levels or {}).items():
        logging.getLogger(name).setLevel(level_from_name(level_name))


def setup_logging_from_config(config: Dict[str, Any]) -> None:
    """Configure logging from the log_* keys of a loaded TillSync config."""
    setup_logging(
        config.get('log_path'),
        max_bytes=int(config.get('log_max_bytes') or LOG_MAX_BYTES),
        backup_count=int(config.get('log_backup_count') or LOG_BACKUP_COUNT),
        console=bool(config.get('log_console', True)),
        level=level_from_name(config.get('log_level')),
    )
    apply_module_levels(config.get('log_levels'))
