"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union


class WindUnit(str, Enum):
    """Target units for published wind speeds."""

    ms = "m/s"
    kmh = "km/h"
    bft = "bft"
    mph = "mph"
    kn = "kn"


class FieldKey(str, Enum):
    """Closed set of measurements that can be scraped from a sensor block."""

    temperature = "temperature"
    temperature_in = "temperature_in"
    temperature_out = "temperature_out"
    temperature_cable = "temperature_cable"
    temperature_1 = "temperature_1"
    temperature_2 = "temperature_2"
    temperature_3 = "temperature_3"
    humidity = "humidity"
    humidity_in = "humidity_in"
    humidity_out = "humidity_out"
    humidity_1 = "humidity_1"
    humidity_2 = "humidity_2"
    humidity_3 = "humidity_3"
    humidity_avg_3h = "humidity_avg_3h"
    humidity_avg_24h = "humidity_avg_24h"
    humidity_avg_7d = "humidity_avg_7d"
    humidity_avg_30d = "humidity_avg_30d"
    rain_total = "rain_total"
    rain_1h = "rain_1h"
    rain_24h = "rain_24h"
    wind_speed = "wind_speed"
    wind_gust = "wind_gust"
    wind_direction = "wind_direction"
    battery = "battery"
    contact = "contact"
    wet = "wet"


class ValueShape(str, Enum):
    """Expected shape of the raw text following a field label."""

    decimal = "decimal"
    percent = "percent"
    wind = "wind"
    text = "text"
    open_closed = "open_closed"
    wet_dry = "wet_dry"
    battery = "battery"


class Placeholder(Enum):
    """Marker for readings the vendor reports as unavailable or overflowed."""

    UNAVAILABLE = "unavailable"

    def __repr__(self) -> str:
        return "UNAVAILABLE"


UNAVAILABLE = Placeholder.UNAVAILABLE

FieldValue = Union[float, int, bool, str, Placeholder]


@dataclass(slots=True)
class FieldIssue:
    """A matched field that was dropped because its text could not be coerced."""

    key: FieldKey
    raw: str
    reason: str


@dataclass(slots=True)
class SensorReading:
    """One sensor block scraped from an overview page."""

    name: str
    id: Optional[str] = None
    timestamp: Optional[str] = None
    fields: Dict[FieldKey, FieldValue] = field(default_factory=dict)
    issues: List[FieldIssue] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class FieldDescriptor:
    """Metadata attached to the state a field is written to."""

    role: str
    unit: str
    name: str
    value_type: str


@dataclass(frozen=True, slots=True)
class PollTarget:
    """A configured phone identifier and how often it is polled."""

    phone_id: str
    interval: float
