# statcube/cli/utils.py
from __future__ import annotations

import logging
from typing import Any

import yaml

from statcube.core.config import settings


def setup_cli_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # statements are only worth printing when asked for
    logging.getLogger("statcube.db.runner").setLevel(
        logging.DEBUG if settings.log_sql else logging.INFO
    )
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


def mask_url(url: str) -> str:
    if "@" not in url:
        return url
    credentials, host = url.split("@", 1)
    return credentials.rsplit(":", 1)[0] + ":***@" + host


def dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
