"""Server-wide settings: a JSON defaults file overlaid with admin overrides from the DB."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from . import app_db
from .config import FALLBACK_MODEL, PRIMARY_MODEL, REPO_ROOT
from .logging_utils import get_logger

log = get_logger(__name__)

DEFAULT_SETTINGS_PATH = REPO_ROOT / "backend" / "default_settings.json"

# Nested sections whose new default keys are copied into stored overrides.
BACKFILLED_SECTIONS = ("llm", "chat")


class SettingsError(RuntimeError):
    pass


def _load_json_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SettingsError(f"Default settings file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SettingsError(f"Cannot parse settings file {path}: {e}") from e
    if not isinstance(data, dict):
        raise SettingsError(f"Settings file {path} must hold a JSON object")
    return data


def _prompt_template(relative: Any) -> str:
    if not isinstance(relative, str) or not relative:
        raise SettingsError("Defaults need a 'system_prompt_template_file' entry")
    path = (REPO_ROOT / relative).resolve()
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SettingsError(f"Cannot read system prompt template {path}: {e}") from e


def load_defaults(path: Path = DEFAULT_SETTINGS_PATH) -> dict[str, Any]:
    defaults = _load_json_file(path)
    defaults["system_prompt_template"] = _prompt_template(defaults.get("system_prompt_template_file"))

    llm = dict(defaults.get("llm") or {})
    configured = [str(m).strip() for m in llm.get("models") or []]
    # An empty list means the env-configured primary/fallback pair.
    llm["models"] = [m for m in configured if m] or [m for m in (PRIMARY_MODEL, FALLBACK_MODEL) if m]
    defaults["llm"] = llm
    return defaults


def get_settings_bundle() -> dict[str, Any]:
    defaults = load_defaults()
    overrides = app_db.list_settings()
    return {"defaults": defaults, "settings": overrides, "effective": {**defaults, **overrides}}


def _with_missing_keys(stored: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    out = dict(stored)
    for key, value in defaults.items():
        if key not in out:
            out[key] = value
        elif isinstance(out[key], dict) and isinstance(value, dict):
            out[key] = _with_missing_keys(out[key], value)
    return out


def ensure_defaults() -> None:
    """Copy newly introduced default keys into stored sections without touching admin values."""
    bundle = get_settings_bundle()
    updates: dict[str, Any] = {}
    for section in BACKFILLED_SECTIONS:
        stored = bundle["settings"].get(section)
        default = bundle["defaults"].get(section)
        if not isinstance(stored, dict) or not isinstance(default, dict):
            continue
        merged = _with_missing_keys(stored, default)
        if merged != stored:
            updates[section] = merged

    if updates:
        log.info("Backfilling settings sections: %s", ", ".join(sorted(updates)))
        app_db.set_settings(updates)


def update_settings(new_values: dict[str, Any]) -> dict[str, Any]:
    app_db.set_settings(new_values)
    log.info("Settings updated: %s", ", ".join(sorted(new_values)) or "(none)")
    return get_settings_bundle()


def llm_section(settings: dict[str, Any]) -> dict[str, Any]:
    llm = settings.get("llm")
    return llm if isinstance(llm, dict) else {}
