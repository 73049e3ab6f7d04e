"""
Topic classification and topic naming.

Everything here is pure: no state, no I/O.
"""
from typing import Optional

from air_monitor.worker.models import MetricKind

DEFAULT_TOPIC_PREFIX = "homeassistant"

# ESPHome exposes sensors as <node>/sensor/<name>/state
_STATE_SUFFIX = "/state"

# (matcher, needle, kind), evaluated in order, first match wins
_RULES = (
    ("suffix", "pm_1mm_weight_concentration", MetricKind.PM1_0),
    ("suffix", "pm_2_5mm_weight_concentration", MetricKind.PM2_5),
    ("suffix", "pm_10mm_weight_concentration", MetricKind.PM10),
    # number concentration bins
    ("contains", "pm_0_3_to_1", MetricKind.PM1_0),
    ("contains", "pm_1_to_2_5", MetricKind.PM2_5),
    ("contains", "pm_2_5_to_4", MetricKind.PM2_5),
    ("contains", "pm_4_to_10", MetricKind.PM10),
    ("contains", "co2", MetricKind.CO2),
    ("contains", "temp", MetricKind.TEMPERATURE),
    ("contains", "hum", MetricKind.HUMIDITY),
    ("contains", "voc", MetricKind.TVOC),
)


def classify(topic: str) -> MetricKind:
    """
    Maps a received topic to the metric it carries.

    Matching is case-insensitive and never fails: anything unrecognised
    is MetricKind.UNKNOWN so the consumer can still show it.
    """
    name = topic.lower()
    if name.endswith(_STATE_SUFFIX):
        name = name[: -len(_STATE_SUFFIX)]

    for matcher, needle, kind in _RULES:
        if matcher == "suffix" and name.endswith(needle):
            return kind
        if matcher == "contains" and needle in name:
            return kind
    return MetricKind.UNKNOWN


def _base_prefix(prefix: Optional[str]) -> str:
    raw = (prefix or "").strip()
    # users often paste the wildcard in too, e.g. "apollo_air1/#"
    while raw.endswith("/#"):
        raw = raw[:-2]
    base = raw.rstrip("#").rstrip("/")
    return base or DEFAULT_TOPIC_PREFIX


def subscription_topic(prefix: Optional[str]) -> str:
    """`homeassistant` and `homeassistant/#` both give `homeassistant/#`."""
    return f"{_base_prefix(prefix)}/#"


def status_topic(prefix: Optional[str]) -> str:
    """Topic used by the connection test to check that subscribing works."""
    return f"{_base_prefix(prefix)}/status"
