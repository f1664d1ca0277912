# statcube/core/logging.py
import logging
import sys
from typing import Optional

from statcube.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third party loggers and the level they are held at
LIBRARY_LEVELS = {
    "uvicorn": logging.INFO,
    "uvicorn.error": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy": logging.WARNING,
    "sqlglot": logging.ERROR,
    "asyncpg": logging.WARNING,
    "httpx": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _level(name: Optional[str], default: int = logging.INFO) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def setup_logging(level: Optional[str] = None, log_sql: Optional[bool] = None) -> None:
    """
    Root logger at INFO on stdout, `statcube.*` at LOG_LEVEL.

    Generated cube statements are logged by `statcube.db.runner` at DEBUG;
    they are only let through when LOG_SQL is set, a full build emits
    thousands of them.
    """
    app_level = _level(level or settings.log_level)
    sql_enabled = settings.log_sql if log_sql is None else log_sql

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.INFO)
    root.addHandler(handler)

    logging.getLogger("statcube").setLevel(app_level)
    logging.getLogger("statcube.db.runner").setLevel(
        logging.DEBUG if sql_enabled else max(app_level, logging.INFO)
    )

    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)
