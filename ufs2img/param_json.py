"""
param_json.py

Reader for the title metadata shipped with every PS5 dump in
sce_sys/param.json.

Only two things are extracted:
  - titleId (e.g. "PPSA01234")
  - the title name for the default language:
        localizedParameters.defaultLanguage -> localizedParameters[<lang>].titleName
    falling back to "en-US" when defaultLanguage is not present.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from ufs2img.errors import MetadataError

LOG = logging.getLogger("param_json")

PARAM_JSON_RELPATH = Path("sce_sys") / "param.json"
FALLBACK_LANGUAGE = "en-US"


@dataclass
class TitleInfo:
    title_id: str
    title_name: str
    language: str


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise MetadataError(f"Cannot read {path}: {e}") from e
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MetadataError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise MetadataError(f"Unexpected top-level JSON type in {path}: {type(data).__name__}")
    return data


def _non_empty_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def load_title_info(path: Path) -> TitleInfo:
    """
    Parse title ID and title name from a param.json file.

    Raises MetadataError when the file cannot be read or a required field
    is missing or empty.
    """
    data = _read_json(path)

    title_id = _non_empty_str(data.get("titleId"))
    if title_id is None:
        raise MetadataError(f"Failed to parse titleId from {path}")

    localized = data.get("localizedParameters")
    if not isinstance(localized, dict):
        localized = {}

    language = _non_empty_str(localized.get("defaultLanguage"))
    if language is None:
        LOG.debug("No defaultLanguage in %s; falling back to %s", path, FALLBACK_LANGUAGE)
        language = FALLBACK_LANGUAGE

    entry = localized.get(language)
    title_name = _non_empty_str(entry.get("titleName")) if isinstance(entry, dict) else None
    if title_name is None:
        raise MetadataError(f"Failed to parse titleName ({language}) from {path}")

    LOG.debug("param.json: titleId=%s titleName=%s language=%s", title_id, title_name, language)
    return TitleInfo(title_id=title_id, title_name=title_name, language=language)
