from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Set


logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
SETTINGS_FILE = DATA_DIR / "roster_settings.json"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "week": {
        "start_day": 0,  # 0 = Monday
    },
    "matching": {
        "commit_threshold": 85,
        "suggestion_floor": 40,
        "ambiguity_margin": 15,
        "honorifics": ["mr", "mrs", "ms", "miss", "mx", "dr", "prof", "sir", "madam"],
    },
    "shifts": {
        "default_break_minutes": 30,
    },
    "limits": {
        "max_batch_records": 500,
        "max_copy_shifts": 1000,
    },
    # actor -> allowed roster actions; "*" matches any actor or any action
    "permissions": {
        "*": ["*"],
    },
}


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _clamp_int(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(number, high))


def _normalize_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce user supplied values back into the ranges the engine expects."""
    overrides = settings if isinstance(settings, dict) else {}
    normalized = _deep_update(DEFAULT_SETTINGS, overrides)
    defaults = DEFAULT_SETTINGS
    # Permission grants replace the defaults rather than merging with the "*" wildcard.
    if isinstance(overrides.get("permissions"), dict):
        normalized["permissions"] = copy.deepcopy(overrides["permissions"])

    week_cfg = normalized["week"]
    week_cfg["start_day"] = _clamp_int(week_cfg.get("start_day"), defaults["week"]["start_day"], 0, 6)

    matching_cfg = normalized["matching"]
    commit = _clamp_int(matching_cfg.get("commit_threshold"), defaults["matching"]["commit_threshold"], 1, 100)
    floor = _clamp_int(matching_cfg.get("suggestion_floor"), defaults["matching"]["suggestion_floor"], 0, 100)
    matching_cfg["commit_threshold"] = commit
    matching_cfg["suggestion_floor"] = min(floor, commit)
    matching_cfg["ambiguity_margin"] = _clamp_int(
        matching_cfg.get("ambiguity_margin"), defaults["matching"]["ambiguity_margin"], 0, 100
    )
    honorifics = matching_cfg.get("honorifics")
    if not isinstance(honorifics, (list, tuple, set)):
        honorifics = defaults["matching"]["honorifics"]
    matching_cfg["honorifics"] = sorted({str(item).strip().lower().rstrip(".") for item in honorifics if str(item).strip()})

    shifts_cfg = normalized["shifts"]
    shifts_cfg["default_break_minutes"] = _clamp_int(
        shifts_cfg.get("default_break_minutes"), defaults["shifts"]["default_break_minutes"], 0, 24 * 60
    )

    limits_cfg = normalized["limits"]
    for key in ("max_batch_records", "max_copy_shifts"):
        limits_cfg[key] = _clamp_int(limits_cfg.get(key), defaults["limits"][key], 1, 100_000)

    permissions = normalized.get("permissions")
    if not isinstance(permissions, dict):
        permissions = copy.deepcopy(defaults["permissions"])
    normalized["permissions"] = {
        str(actor): sorted({str(action) for action in (actions or [])})
        for actor, actions in permissions.items()
        if isinstance(actions, (list, tuple, set))
    }
    return normalized


def build_default_settings() -> Dict[str, Any]:
    return _normalize_settings({})


def load_settings(path: Path | str | None = None) -> Dict[str, Any]:
    """Return settings merged from the JSON file (if any) over the defaults."""
    settings_path = Path(path) if path is not None else SETTINGS_FILE
    if not settings_path.exists():
        return build_default_settings()
    try:
        data = json.loads(settings_path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("settings file must contain a JSON object")
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", settings_path, exc)
        return build_default_settings()
    return _normalize_settings(data)


def save_settings(settings: Dict[str, Any], path: Path | str | None = None) -> None:
    settings_path = Path(path) if path is not None else SETTINGS_FILE
    settings_path.write_text(json.dumps(_normalize_settings(settings), indent=2, sort_keys=True), encoding="utf-8")


def week_start_day(settings: Dict[str, Any]) -> int:
    return int(settings.get("week", {}).get("start_day", 0))


def matching_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return settings.get("matching") or build_default_settings()["matching"]


def limit(settings: Dict[str, Any], key: str) -> int:
    return int(settings.get("limits", {}).get(key, DEFAULT_SETTINGS["limits"][key]))


def default_break_minutes(settings: Dict[str, Any]) -> int:
    return int(settings.get("shifts", {}).get("default_break_minutes", 0))


def permission_grants(settings: Dict[str, Any]) -> Dict[str, Set[str]]:
    grants = settings.get("permissions") or {}
    return {actor: set(actions) for actor, actions in grants.items()}


def allowed_actions(grants: Dict[str, Iterable[str]], actor: str) -> Set[str]:
    actions: Set[str] = set(grants.get("*", ()))
    actions.update(grants.get(actor, ()))
    return actions
