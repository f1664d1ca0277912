# statcube/core/i18n.py
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

RESOURCES_DIR = Path(__file__).resolve().parent.parent / "resources"
TRANSLATIONS_FILE = RESOURCES_DIR / "translations.yaml"
FALLBACK_LOCALE = "en-GB"


@lru_cache
def load_translations() -> dict[str, Any]:
    with TRANSLATIONS_FILE.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _lookup(tree: Any, parts: list[str]) -> Any:
    node = tree
    for part in parts:
        if not isinstance(node, dict):
            return None
        if part in node:
            node = node[part]
        elif part.isdigit() and int(part) in node:
            node = node[int(part)]
        else:
            return None
    return node


def t(key: str, locale: str) -> str:
    """Translate a dotted key, falling back to the default locale, then to the key."""
    translations = load_translations()
    for candidate in (locale, FALLBACK_LOCALE):
        value = _lookup(translations.get(candidate, {}), key.split("."))
        if isinstance(value, str):
            return value
    logger.warning("Missing translation %s for %s", key, locale)
    return key


def lang_code(locale: str) -> str:
    """'en-GB' -> 'en', used as view name suffix."""
    return locale.lower().split("-")[0]


def language_value(locale: str) -> str:
    """'en-GB' -> 'en-gb', the value stored in the language column of cube tables."""
    return locale.lower()
