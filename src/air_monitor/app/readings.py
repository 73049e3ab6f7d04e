"""
Consumer-side view of the worker's events.

`LatestReadings` folds the polled events into what a dashboard shows: the
connection flag, the last status line and the latest value of each metric.
"""
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from air_monitor.worker.models import (
    ConnectedEvent,
    DisconnectedEvent,
    ErrorEvent,
    MetricEvent,
    MetricKind,
    ReconnectingEvent,
    StatusEvent,
    WorkerEvent,
)

HIGH_CO2_PPM = 2000.0
HIGH_TVOC_PPB = 2200.0

# (upper bound for PM2.5 in ug/m3, label)
_PM25_BANDS = (
    (12.0, "Excellent"),
    (35.0, "Good"),
    (55.0, "Moderate"),
    (150.0, "Poor"),
    (250.0, "Unhealthy"),
)


def air_quality_label(pm25: Optional[float]) -> str:
    """Overall air quality, judged on PM2.5 alone."""
    if pm25 is None:
        return "Unknown"
    for upper, label in _PM25_BANDS:
        if pm25 < upper:
            return label
    return "Hazardous"


@dataclass
class LatestReadings:
    connected: bool = False
    status: str = ""
    values: Dict[MetricKind, float] = field(default_factory=dict)
    last_topic: Optional[str] = None
    last_update: Optional[float] = None

    def apply(self, event: WorkerEvent):
        if isinstance(event, MetricEvent):
            sample = event.sample
            self.last_topic = sample.topic
            self.last_update = time.time()
            if sample.kind is not MetricKind.UNKNOWN:
                self.values[sample.kind] = sample.value
        elif isinstance(event, ConnectedEvent):
            self.connected = True
            self.status = "MQTT connected"
        elif isinstance(event, DisconnectedEvent):
            self.connected = False
            self.status = f"MQTT disconnected: {event.reason}"
        elif isinstance(event, ReconnectingEvent):
            self.status = f"Reconnecting in {event.delay:.0f}s (attempt {event.attempt})"
        elif isinstance(event, ErrorEvent):
            self.status = f"Error: {event.description}"
        elif isinstance(event, StatusEvent):
            self.status = event.message

    def get(self, kind: MetricKind) -> Optional[float]:
        return self.values.get(kind)

    @property
    def quality(self) -> str:
        return air_quality_label(self.get(MetricKind.PM2_5))

    def warnings(self) -> List[str]:
        found = []
        co2 = self.get(MetricKind.CO2)
        if co2 is not None and co2 > HIGH_CO2_PPM:
            found.append(f"High CO2: {co2:.0f} ppm")
        tvoc = self.get(MetricKind.TVOC)
        if tvoc is not None and tvoc > HIGH_TVOC_PPB:
            found.append(f"High VOC: {tvoc:.0f} ppb")
        return found
