import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from alert_config import (
    AlertConfigStore,
    AlertThreshold,
    default_thresholds,
    select_distance_level,
    select_speed_level,
    select_time_level,
    validate_thresholds,
)
from track_errors import ValidationError


def _distance(level, miles, enabled=True):
    return AlertThreshold("A1", "Proximity", level, distance_miles=miles, enabled=enabled)


def test_distance_level_picks_smallest_covering_threshold():
    thresholds = default_thresholds("A1", "Boundary")
    assert select_distance_level(1.2, thresholds) is None
    assert select_distance_level(1.0, thresholds).level == "Informational"
    assert select_distance_level(0.8, thresholds).level == "Informational"
    assert select_distance_level(0.6, thresholds).level == "Warning"
    assert select_distance_level(0.5, thresholds).level == "Critical"
    assert select_distance_level(0.0, thresholds).level == "Critical"


def test_disabled_levels_are_skipped():
    thresholds = [
        _distance("Informational", 1.0),
        _distance("Warning", 0.5, enabled=False),
        _distance("Critical", 0.25),
    ]
    assert select_distance_level(0.4, thresholds).level == "Informational"


def test_speed_and_time_selection():
    speed = default_thresholds("A1", "Speed")
    assert select_speed_level(20, speed) is None
    assert select_speed_level(30, speed).level == "Warning"
    assert select_speed_level(45, speed).level == "Critical"
    assert select_speed_level(None, speed) is None

    time = default_thresholds("A1", "Time")
    assert select_time_level(45, time) is None
    assert select_time_level(20, time).level == "Informational"
    assert select_time_level(10, time).level == "Warning"
    assert select_time_level(3, time).level == "Critical"


def test_validation_enforces_ordering():
    with pytest.raises(ValidationError):
        validate_thresholds(
            "Proximity",
            [_distance("Informational", 0.5), _distance("Warning", 0.75), _distance("Critical", 0.25)],
        )
    with pytest.raises(ValidationError):
        validate_thresholds("Proximity", [_distance("Warning", 0.5), _distance("Critical", 0.5)])
    with pytest.raises(ValidationError):
        validate_thresholds("Proximity", [_distance("Critical", -1.0)])
    with pytest.raises(ValidationError):
        validate_thresholds("Proximity", [_distance("Critical", 0.1), _distance("Critical", 0.2)])
    with pytest.raises(ValidationError):
        validate_thresholds("Nearby", [])


def test_validation_ignores_disabled_levels_for_ordering():
    validate_thresholds(
        "Proximity",
        [_distance("Informational", 1.0), _distance("Warning", 2.0, enabled=False), _distance("Critical", 0.25)],
    )


def test_store_defaults_then_persisted_override(tmp_path):
    path = tmp_path / "alert_configs.json"
    store = AlertConfigStore(path)
    defaults = asyncio.run(store.get_thresholds("A1", "Proximity"))
    assert {t.level: t.distance_miles for t in defaults} == {
        "Informational": 1.0,
        "Warning": 0.5,
        "Critical": 0.25,
    }

    custom = [_distance("Critical", 0.1), _distance("Informational", 2.0)]
    asyncio.run(store.set_thresholds("A1", "Proximity", custom))

    reloaded = AlertConfigStore(path)
    stored = asyncio.run(reloaded.get_thresholds("A1", "Proximity"))
    assert [(t.level, t.distance_miles) for t in stored] == [("Critical", 0.1), ("Informational", 2.0)]
    other_agency = asyncio.run(reloaded.get_thresholds("A2", "Proximity"))
    assert len(other_agency) == 3


def test_message_template_rendering():
    threshold = AlertThreshold("A1", "Boundary", "Warning", 0.75, message_template="{distance:.1f} mi to limit")
    assert threshold.render_message("default", distance=0.62) == "0.6 mi to limit"
    broken = AlertThreshold("A1", "Boundary", "Warning", 0.75, message_template="{missing}")
    assert broken.render_message("default", distance=0.62) == "default"
