"""
Logging setup: console plus daily-rotating application and error files
"""

import logging
import logging.handlers
from pathlib import Path

from .config import LOG_DIR, LOG_LEVEL, LOG_TO_FILE

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

APP_LOG_RETENTION_DAYS = 14
ERROR_LOG_RETENTION_DAYS = 30

_configured = False


def configure_logging(level: str = LOG_LEVEL, log_dir: str = LOG_DIR, to_file: bool = LOG_TO_FILE) -> None:
    """Configure root logging once per process"""
    global _configured
    if _configured:
        return

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if to_file:
        logs_path = Path(log_dir)
        try:
            logs_path.mkdir(parents=True, exist_ok=True)
            app_handler = logging.handlers.TimedRotatingFileHandler(
                logs_path / "app.log", when="midnight", backupCount=APP_LOG_RETENTION_DAYS, encoding="utf-8"
            )
            error_handler = logging.handlers.TimedRotatingFileHandler(
                logs_path / "error.log", when="midnight", backupCount=ERROR_LOG_RETENTION_DAYS, encoding="utf-8"
            )
            error_handler.setLevel(logging.ERROR)
            handlers.extend([app_handler, error_handler])
        except OSError as e:
            # Read-only filesystems still get console logging
            logging.getLogger(__name__).warning(f"⚠️ File logging disabled, cannot use {logs_path}: {e}")

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT, handlers=handlers)

    # Reduce verbosity of third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _configured = True
