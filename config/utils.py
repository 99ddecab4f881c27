"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict


def _as_plain_dict(candidate: Any) -> Dict:
    if isinstance(candidate, dict):
        return candidate
    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        data = to_dict()
        if isinstance(data, dict):
            return data
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return {}


def get_config_section(source: Any, section: str) -> Dict:
    """Return a dictionary section from a Config, a SectionProxy, or a plain dict.

    Missing sections resolve to an empty dict so callers can apply their own defaults.
    """
    if source is None:
        return {}

    if isinstance(source, Mapping):
        return _as_plain_dict(source.get(section, {}))

    getter = getattr(source, 'get', None)
    if callable(getter):
        return _as_plain_dict(getter(section, {}))

    return {}


def section_value(section: Dict, key: str, default: Any, cast=float) -> Any:
    """Read ``key`` from a section, falling back to ``default`` for missing or blank values."""
    value = section.get(key, default)
    if value is None or value == '':
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        return default
