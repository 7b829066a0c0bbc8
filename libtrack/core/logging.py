import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from libtrack.core.config import settings

LOG_DIR = Path("logs")
LOG_FILE = "libtrack_api.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers and the level they get when LOG_LEVEL is above DEBUG
QUIET_LIBRARIES = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "openai": logging.WARNING,
    "openai._base_client": logging.WARNING,
    "langchain": logging.INFO,
    "langgraph": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "asyncpg": logging.WARNING,
    "passlib": logging.ERROR,
    "multipart": logging.WARNING,
}


def _handlers(level: int):
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    LOG_DIR.mkdir(exist_ok=True)
    rotating = RotatingFileHandler(LOG_DIR / LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")

    for handler in (console, rotating):
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return console, rotating


def setup_logging() -> logging.Logger:
    """Send everything to stdout and logs/libtrack_api.log, with library chatter turned down."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    debug = log_level <= logging.DEBUG

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in _handlers(log_level):
        root_logger.addHandler(handler)

    for name, quiet_level in QUIET_LIBRARIES.items():
        # passlib stays quiet even under DEBUG
        logging.getLogger(name).setLevel(quiet_level if not debug or name == "passlib" else logging.DEBUG)

    # --- Uvicorn --- #
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.setLevel(log_level)
        uvicorn_logger.propagate = False

    # --- Application --- #
    logging.getLogger("libtrack").setLevel(log_level)
    # Per-pass scheduler results are always worth keeping
    logging.getLogger("libtrack.services.scheduler").setLevel(min(log_level, logging.INFO))
    logging.getLogger("libtrack.db.connection").setLevel(logging.DEBUG if debug else logging.INFO)

    return root_logger
