"""Plan limits, estimate-size labels and calendar defaults.

Values come from `backend.config`, optionally overridden by a YAML file at
PROJECTFLOW_SETTINGS_PATH:

    plans:
      free: {maxTrackedIssues: 50}
      pro: {maxTrackedIssues: 0}
    estimateDays: {XS: 2, S: 5, M: 10, L: 15, XL: 25, XXL: 40}
    calendar:
      workingDaysOnly: false
      weekendDays: [5, 6]
"""
from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from backend import config

logger = logging.getLogger("projectflow.settings")

DEFAULT_ESTIMATE_DAYS = {
    "XS": 2,
    "S": 5,
    "M": 10,
    "L": 15,
    "XL": 25,
    "XXL": 40,
}

_SIZE_LABEL_RE = re.compile(r"^(?:size|estimate)\s*[:/]\s*(?P<size>[A-Za-z]+)$", re.IGNORECASE)


def _default_settings() -> dict[str, Any]:
    return {
        "plans": {
            "free": {"maxTrackedIssues": config.FREE_MAX_TRACKED_ISSUES},
            "pro": {"maxTrackedIssues": config.PRO_MAX_TRACKED_ISSUES},
            "enterprise": {"maxTrackedIssues": config.ENTERPRISE_MAX_TRACKED_ISSUES},
        },
        "estimateDays": dict(DEFAULT_ESTIMATE_DAYS),
        "calendar": {
            "workingDaysOnly": config.WORKING_DAYS_ONLY,
            "weekendDays": [5, 6],
        },
    }


def load_settings(path: str | Path | None = None) -> dict[str, Any]:
    """Merge the YAML settings file (if any) over the environment defaults."""
    settings = _default_settings()
    target = Path(path) if path else (Path(config.SETTINGS_PATH) if config.SETTINGS_PATH else None)
    if target is None:
        return settings
    if not target.exists():
        logger.warning("Settings file %s not found; using defaults", target)
        return settings
    try:
        loaded = yaml.safe_load(target.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        logger.warning("Failed to parse settings file %s: %s", target, exc)
        return settings
    if not isinstance(loaded, dict):
        logger.warning("Settings file %s must contain a mapping", target)
        return settings

    for section in ("plans", "estimateDays", "calendar"):
        value = loaded.get(section)
        if not isinstance(value, dict):
            continue
        if section == "plans":
            for tier, limits in value.items():
                if isinstance(limits, dict):
                    settings["plans"].setdefault(str(tier).lower(), {}).update(limits)
        elif section == "estimateDays":
            settings["estimateDays"].update({str(k).upper(): v for k, v in value.items()})
        else:
            settings[section].update(value)
    return settings


@lru_cache(maxsize=1)
def get_settings() -> dict[str, Any]:
    return load_settings()


def plan_cap(tier: str | None, settings: dict[str, Any] | None = None) -> int | None:
    """Tracked-item cap for a plan tier. None means unlimited."""
    settings = settings or get_settings()
    plans = settings.get("plans", {})
    limits = plans.get((tier or "free").lower()) or plans.get("free") or {}
    try:
        cap = int(limits.get("maxTrackedIssues") or 0)
    except (TypeError, ValueError):
        return None
    return cap if cap > 0 else None


def estimate_days(value: Any, settings: dict[str, Any] | None = None) -> float | None:
    """Resolve a numeric estimate or a size label ("M", "size: XL") to days."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    token = str(value).strip()
    try:
        return float(token)
    except ValueError:
        pass
    match = _SIZE_LABEL_RE.match(token)
    size = (match.group("size") if match else token).upper()
    table = (settings or get_settings()).get("estimateDays", DEFAULT_ESTIMATE_DAYS)
    days = table.get(size)
    return float(days) if days is not None else None


def size_from_labels(labels: list[str]) -> str | None:
    """Return the size token of the first `size: X` label, if any."""
    for label in labels:
        match = _SIZE_LABEL_RE.match(label.strip())
        if match:
            return match.group("size").upper()
    return None
