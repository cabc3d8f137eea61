import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from consult_chat.config import get_settings

ROOT_LOGGER_NAME = "consult_chat"
_MAX_BYTES = 10 * 1024 * 1024  # 10MB
_BACKUPS = 5

_configured = False


def configure_logging() -> logging.Logger:
    """Attach console + rotating file handlers to the package logger once."""
    global _configured
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if _configured:
        return root

    settings = get_settings()
    level = logging.DEBUG if settings.APP_DEBUG else logging.INFO
    root.setLevel(level)
    root.propagate = True

    # Prevent duplicate logs after a reload
    if root.handlers:
        root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root.addHandler(console)

    logs_dir = Path(settings.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    detailed = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    app_file = RotatingFileHandler(logs_dir / "app.log", maxBytes=_MAX_BYTES, backupCount=_BACKUPS)
    app_file.setLevel(logging.INFO)
    app_file.setFormatter(detailed)
    root.addHandler(app_file)

    # Errors also go to their own file so upload/transport failures are easy to find
    errors_file = RotatingFileHandler(logs_dir / "errors.log", maxBytes=_MAX_BYTES, backupCount=_BACKUPS)
    errors_file.setLevel(logging.ERROR)
    errors_file.setFormatter(detailed)
    root.addHandler(errors_file)

    _configured = True
    return root


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance. If name is provided, returns a child logger."""
    root = configure_logging()
    if name:
        return root.getChild(name)
    return root
