from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger("companion_core.prompts")


@dataclass(slots=True)
class _CachedPrompts:
    mtime_ns: int | None
    values: dict[str, Any]


_CACHE: dict[str, _CachedPrompts] = {}


def _data_dir() -> Path:
    return Path(__file__).with_name("data")


def _file_mtime(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _read_overrides(path: Path) -> dict[str, Any] | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logger.warning("[prompts] unreadable override file=%s error=%s", path, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("[prompts] override root must be an object file=%s", path)
        return None
    return payload


def _layer(defaults: dict[str, Any], overrides: dict[str, Any], source: str, prefix: str = "") -> dict[str, Any]:
    """Apply ``overrides`` on top of ``defaults`` keeping the shape of the defaults.

    Unknown keys, values of another type and blank strings are skipped so a bad override
    file can only fall back to built-in text, never break a prompt builder.
    """
    layered = copy.deepcopy(defaults)
    for key, value in overrides.items():
        name = f"{prefix}{key}"
        if key not in defaults:
            logger.warning("[prompts] unknown key=%s file=%s", name, source)
            continue
        default = defaults[key]
        if isinstance(default, dict) and isinstance(value, dict):
            layered[key] = _layer(default, value, source, f"{name}.")
        elif type(value) is not type(default):
            logger.warning(
                "[prompts] key=%s expected=%s got=%s file=%s",
                name,
                type(default).__name__,
                type(value).__name__,
                source,
            )
        elif isinstance(value, str) and not value.strip():
            logger.warning("[prompts] blank key=%s file=%s", name, source)
        else:
            layered[key] = copy.deepcopy(value)
    return layered


def load_prompt_json(filename: str, defaults: dict[str, Any], *, data_dir: Path | None = None) -> dict[str, Any]:
    """Built-in prompt ``defaults`` overlaid with ``filename`` from the prompt data dir.

    The result is cached per file and rebuilt when the file mtime changes, so prompt text
    can be edited without a restart.
    """
    path = (data_dir or _data_dir()) / filename
    cache_key = str(path.resolve())
    mtime_ns = _file_mtime(path)

    cached = _CACHE.get(cache_key)
    if cached is not None and cached.mtime_ns == mtime_ns:
        return copy.deepcopy(cached.values)

    overrides = _read_overrides(path) if mtime_ns is not None else None
    if mtime_ns is None:
        logger.debug("[prompts] no override file=%s", path)
    values = _layer(defaults, overrides, str(path)) if overrides else copy.deepcopy(defaults)

    _CACHE[cache_key] = _CachedPrompts(mtime_ns, values)
    return copy.deepcopy(values)
