# statcube/cube/view_config.py
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from statcube.core.config import settings
from statcube.core.files import load_yaml_file
from statcube.core.i18n import RESOURCES_DIR
from statcube.schemas.cube import CubeViewConfig, CubeViewsFile

logger = logging.getLogger(__name__)

DEFAULT_VIEWS_FILE = RESOURCES_DIR / "cube_views.yaml"


@lru_cache
def load_view_configs(path: Optional[Path] = None) -> tuple[CubeViewConfig, ...]:
    """Named views built for every cube, from settings or the bundled file."""
    source = path or settings.cube_views_file or DEFAULT_VIEWS_FILE
    views = CubeViewsFile.model_validate(load_yaml_file(Path(source))).views
    names = [v.name for v in views]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate view names in {source}: {names}")
    logger.debug("Loaded %d named views from %s", len(views), source)
    return tuple(views)
