"""Per-agency alert thresholds and level selection."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from track_errors import ValidationError


CONFIG_BOUNDARY = "Boundary"
CONFIG_PROXIMITY = "Proximity"
CONFIG_OVERLAP = "Overlap"
CONFIG_SPEED = "Speed"
CONFIG_TIME = "Time"
CONFIG_TYPES = (CONFIG_BOUNDARY, CONFIG_PROXIMITY, CONFIG_OVERLAP, CONFIG_SPEED, CONFIG_TIME)
DISTANCE_CONFIG_TYPES = (CONFIG_BOUNDARY, CONFIG_PROXIMITY, CONFIG_OVERLAP)

LEVEL_CRITICAL = "Critical"
LEVEL_WARNING = "Warning"
LEVEL_INFORMATIONAL = "Informational"
# Most severe first
LEVELS = (LEVEL_CRITICAL, LEVEL_WARNING, LEVEL_INFORMATIONAL)
LEVEL_RANK = {level: idx for idx, level in enumerate(LEVELS)}


@dataclass
class AlertThreshold:
    agency_id: str
    config_type: str
    level: str
    distance_miles: float = 0.0
    enabled: bool = True
    speed_mph: Optional[float] = None
    time_minutes: Optional[float] = None
    message_template: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "agencyId": self.agency_id,
            "configType": self.config_type,
            "level": self.level,
            "distanceMiles": self.distance_miles,
            "enabled": self.enabled,
            "speedMph": self.speed_mph,
            "timeMinutes": self.time_minutes,
            "messageTemplate": self.message_template,
        }

    def render_message(self, default: str, **values) -> str:
        if not self.message_template:
            return default
        try:
            return self.message_template.format(**values)
        except (KeyError, IndexError, ValueError):
            return default


_DEFAULT_DISTANCES: Dict[str, Dict[str, float]] = {
    CONFIG_BOUNDARY: {LEVEL_INFORMATIONAL: 1.0, LEVEL_WARNING: 0.75, LEVEL_CRITICAL: 0.5},
    CONFIG_PROXIMITY: {LEVEL_INFORMATIONAL: 1.0, LEVEL_WARNING: 0.5, LEVEL_CRITICAL: 0.25},
    CONFIG_OVERLAP: {LEVEL_INFORMATIONAL: 1.0, LEVEL_WARNING: 0.5, LEVEL_CRITICAL: 0.25},
}
_DEFAULT_SPEEDS = {LEVEL_WARNING: 25.0, LEVEL_CRITICAL: 40.0}
_DEFAULT_MINUTES = {LEVEL_INFORMATIONAL: 30.0, LEVEL_WARNING: 15.0, LEVEL_CRITICAL: 5.0}


def default_thresholds(agency_id: str, config_type: str) -> List[AlertThreshold]:
    if config_type in _DEFAULT_DISTANCES:
        return [
            AlertThreshold(agency_id, config_type, level, distance_miles=miles)
            for level, miles in _DEFAULT_DISTANCES[config_type].items()
        ]
    if config_type == CONFIG_SPEED:
        return [
            AlertThreshold(agency_id, config_type, level, speed_mph=mph)
            for level, mph in _DEFAULT_SPEEDS.items()
        ]
    if config_type == CONFIG_TIME:
        return [
            AlertThreshold(agency_id, config_type, level, time_minutes=minutes)
            for level, minutes in _DEFAULT_MINUTES.items()
        ]
    raise ValidationError(f"unknown alert config type {config_type!r}")


def _ordered(thresholds: Iterable[AlertThreshold], attr: str) -> List[AlertThreshold]:
    return sorted(
        (t for t in thresholds if t.enabled and getattr(t, attr) is not None),
        key=lambda t: LEVEL_RANK.get(t.level, len(LEVELS)),
    )


def validate_thresholds(config_type: str, thresholds: List[AlertThreshold]) -> None:
    """
    Reject thresholds that would make level selection ambiguous.

    Distances and limits must be non-negative and each level may appear once.
    Among enabled levels, distances and minutes must strictly grow from
    Critical to Informational; speeds must strictly shrink.
    """
    if config_type not in CONFIG_TYPES:
        raise ValidationError(f"unknown alert config type {config_type!r}")
    seen = set()
    for t in thresholds:
        if t.level not in LEVEL_RANK:
            raise ValidationError(f"unknown alert level {t.level!r}")
        if t.level in seen:
            raise ValidationError(f"duplicate {t.level} threshold for {config_type}")
        seen.add(t.level)
        if t.config_type != config_type:
            raise ValidationError(f"threshold type {t.config_type} does not match {config_type}")
        for attr in ("distance_miles", "speed_mph", "time_minutes"):
            value = getattr(t, attr)
            if value is not None and value < 0:
                raise ValidationError(f"{config_type} {t.level} {attr} must be >= 0")

    if config_type in DISTANCE_CONFIG_TYPES:
        attr, ascending = "distance_miles", True
    elif config_type == CONFIG_TIME:
        attr, ascending = "time_minutes", True
    else:
        attr, ascending = "speed_mph", False

    ordered = _ordered(thresholds, attr)
    for prev, cur in zip(ordered, ordered[1:]):
        a, b = getattr(prev, attr), getattr(cur, attr)
        if (ascending and not a < b) or (not ascending and not a > b):
            raise ValidationError(
                f"{config_type} thresholds out of order: {prev.level} {a} vs {cur.level} {b}"
            )


def select_distance_level(
    distance_miles: float, thresholds: Iterable[AlertThreshold]
) -> Optional[AlertThreshold]:
    """The enabled threshold with the smallest distance that still covers ``distance_miles``."""
    covering = [
        t for t in thresholds
        if t.enabled and t.distance_miles is not None and distance_miles <= t.distance_miles
    ]
    if not covering:
        return None
    return min(covering, key=lambda t: (t.distance_miles, LEVEL_RANK.get(t.level, len(LEVELS))))


def select_speed_level(
    speed_mph: Optional[float], thresholds: Iterable[AlertThreshold]
) -> Optional[AlertThreshold]:
    if speed_mph is None:
        return None
    exceeded = [
        t for t in thresholds
        if t.enabled and t.speed_mph is not None and speed_mph > t.speed_mph
    ]
    if not exceeded:
        return None
    return max(exceeded, key=lambda t: (t.speed_mph, -LEVEL_RANK.get(t.level, len(LEVELS))))


def select_time_level(
    minutes_remaining: Optional[float], thresholds: Iterable[AlertThreshold]
) -> Optional[AlertThreshold]:
    if minutes_remaining is None:
        return None
    covering = [
        t for t in thresholds
        if t.enabled and t.time_minutes is not None and minutes_remaining <= t.time_minutes
    ]
    if not covering:
        return None
    return min(covering, key=lambda t: (t.time_minutes, LEVEL_RANK.get(t.level, len(LEVELS))))


def threshold_from_dict(agency_id: str, config_type: str, data: dict) -> AlertThreshold:
    def _opt_float(key: str, alt: str) -> Optional[float]:
        value = data.get(key, data.get(alt))
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a number")

    distance = _opt_float("distanceMiles", "distance_miles")
    return AlertThreshold(
        agency_id=str(agency_id),
        config_type=config_type,
        level=str(data.get("level", "")),
        distance_miles=distance if distance is not None else 0.0,
        enabled=bool(data.get("enabled", True)),
        speed_mph=_opt_float("speedMph", "speed_mph"),
        time_minutes=_opt_float("timeMinutes", "time_minutes"),
        message_template=data.get("messageTemplate", data.get("message_template")),
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AlertConfigStore:
    """File-backed thresholds per (agency, config type); falls back to defaults."""

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._configs: Dict[str, Dict[str, List[AlertThreshold]]] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._configs.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except json.JSONDecodeError:
            print(f"[alert-config] could not parse {self._path}; using defaults")
            return
        agencies = raw.get("agencies", {}) if isinstance(raw, dict) else {}
        for agency_id, by_type in agencies.items():
            if not isinstance(by_type, dict):
                continue
            for config_type, entries in by_type.items():
                if config_type not in CONFIG_TYPES or not isinstance(entries, list):
                    continue
                items = [
                    AlertThreshold(**entry) for entry in entries
                    if isinstance(entry, dict) and entry.get("level") in LEVEL_RANK
                ]
                self._configs.setdefault(str(agency_id), {})[config_type] = items

    async def _persist(self) -> None:
        data = {
            "agencies": {
                agency_id: {
                    config_type: [asdict(t) for t in items]
                    for config_type, items in by_type.items()
                }
                for agency_id, by_type in self._configs.items()
            },
            "updated_at": _now_iso(),
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    async def get_thresholds(self, agency_id: str, config_type: str) -> List[AlertThreshold]:
        if config_type not in CONFIG_TYPES:
            raise ValidationError(f"unknown alert config type {config_type!r}")
        async with self._lock:
            stored = self._configs.get(str(agency_id), {}).get(config_type)
            if stored is not None:
                return list(stored)
        return default_thresholds(str(agency_id), config_type)

    async def get_all(self, agency_id: str) -> Dict[str, List[AlertThreshold]]:
        return {
            config_type: await self.get_thresholds(agency_id, config_type)
            for config_type in CONFIG_TYPES
        }

    async def set_thresholds(
        self, agency_id: str, config_type: str, thresholds: List[AlertThreshold]
    ) -> List[AlertThreshold]:
        validate_thresholds(config_type, thresholds)
        items = sorted(thresholds, key=lambda t: LEVEL_RANK[t.level])
        async with self._lock:
            self._configs.setdefault(str(agency_id), {})[config_type] = items
            await self._persist()
        print(f"[alert-config] agency {agency_id} updated {config_type} thresholds")
        return list(items)


__all__ = [
    "AlertConfigStore",
    "AlertThreshold",
    "CONFIG_BOUNDARY",
    "CONFIG_OVERLAP",
    "CONFIG_PROXIMITY",
    "CONFIG_SPEED",
    "CONFIG_TIME",
    "CONFIG_TYPES",
    "LEVELS",
    "LEVEL_CRITICAL",
    "LEVEL_INFORMATIONAL",
    "LEVEL_WARNING",
    "default_thresholds",
    "select_distance_level",
    "select_speed_level",
    "select_time_level",
    "threshold_from_dict",
    "validate_thresholds",
]
