"""Turns scraped text fragments into typed, storage-ready values."""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Dict, Tuple

from models.records import (
    UNAVAILABLE,
    FieldDescriptor,
    FieldKey,
    FieldValue,
    ValueShape,
    WindUnit,
)
from services.errors import FieldCoercionError

# compared case-insensitively against the whole value token
PLACEHOLDER_TOKENS = frozenset({"ol", "---", "--", "-", "n/a", "na"})

BEAUFORT_FACTOR = 0.836
BEAUFORT_MAX = 12

_WIND_FACTORS: Dict[WindUnit, float] = {
    WindUnit.kmh: 3.6,
    WindUnit.mph: 2.23694,
    WindUnit.kn: 1.94384,
}

_STATE_WORDS: Dict[ValueShape, Dict[str, bool]] = {
    ValueShape.open_closed: {
        "offen": True,
        "open": True,
        "geöffnet": True,
        "geschlossen": False,
        "closed": False,
        "zu": False,
    },
    ValueShape.wet_dry: {
        "feucht": True,
        "nass": True,
        "wet": True,
        "trocken": False,
        "dry": False,
    },
    ValueShape.battery: {
        "schwach": True,
        "leer": True,
        "low": True,
        "ok": False,
        "gut": False,
        "good": False,
    },
}

_SEGMENT_INVALID = re.compile(r"[^A-Za-z0-9_-]+")
_SEGMENT_REPEATS = re.compile(r"[_-]{2,}")
_TRANSLITERATIONS = {"ß": "ss", "Æ": "AE", "æ": "ae", "Ø": "O", "ø": "o", "Œ": "OE", "œ": "oe"}

# key -> (role, unit, friendly name, value type); wind units are filled in per config
_DESCRIPTORS: Dict[FieldKey, Tuple[str, str, str, str]] = {
    FieldKey.temperature: ("value.temperature", "°C", "Temperature", "number"),
    FieldKey.temperature_in: ("value.temperature", "°C", "Inside temperature", "number"),
    FieldKey.temperature_out: ("value.temperature", "°C", "Outside temperature", "number"),
    FieldKey.temperature_cable: ("value.temperature", "°C", "Cable probe temperature", "number"),
    FieldKey.temperature_1: ("value.temperature", "°C", "Temperature probe 1", "number"),
    FieldKey.temperature_2: ("value.temperature", "°C", "Temperature probe 2", "number"),
    FieldKey.temperature_3: ("value.temperature", "°C", "Temperature probe 3", "number"),
    FieldKey.humidity: ("value.humidity", "%", "Humidity", "number"),
    FieldKey.humidity_in: ("value.humidity", "%", "Inside humidity", "number"),
    FieldKey.humidity_out: ("value.humidity", "%", "Outside humidity", "number"),
    FieldKey.humidity_1: ("value.humidity", "%", "Humidity probe 1", "number"),
    FieldKey.humidity_2: ("value.humidity", "%", "Humidity probe 2", "number"),
    FieldKey.humidity_3: ("value.humidity", "%", "Humidity probe 3", "number"),
    FieldKey.humidity_avg_3h: ("value.humidity", "%", "Humidity average 3h", "number"),
    FieldKey.humidity_avg_24h: ("value.humidity", "%", "Humidity average 24h", "number"),
    FieldKey.humidity_avg_7d: ("value.humidity", "%", "Humidity average 7d", "number"),
    FieldKey.humidity_avg_30d: ("value.humidity", "%", "Humidity average 30d", "number"),
    FieldKey.rain_total: ("value.rain", "mm", "Rain total", "number"),
    FieldKey.rain_1h: ("value.rain.hour", "mm", "Rain last hour", "number"),
    FieldKey.rain_24h: ("value.rain.today", "mm", "Rain last 24h", "number"),
    FieldKey.wind_speed: ("value.speed.wind", "", "Wind speed", "number"),
    FieldKey.wind_gust: ("value.speed.wind.gust", "", "Wind gust", "number"),
    FieldKey.wind_direction: ("value.direction.wind", "", "Wind direction", "string"),
    FieldKey.battery: ("indicator.lowbat", "", "Battery low", "boolean"),
    FieldKey.contact: ("sensor.window", "", "Contact open", "boolean"),
    FieldKey.wet: ("sensor.alarm.flood", "", "Water detected", "boolean"),
}


def is_placeholder(raw: str) -> bool:
    return raw.strip().lower() in PLACEHOLDER_TOKENS


def parse_decimal(raw: str) -> float:
    """Parse a locale formatted number such as ``"21,3"`` or ``"-2,5"``."""
    candidate = raw.strip().replace(" ", "")
    if not candidate:
        raise FieldCoercionError(raw, "empty numeric value")
    candidate = candidate.replace(",", ".", 1)
    try:
        value = float(candidate)
    except ValueError as exc:
        raise FieldCoercionError(raw, "invalid numeric value") from exc
    if not math.isfinite(value):
        raise FieldCoercionError(raw, "non-finite numeric value")
    return value


def parse_percent(raw: str) -> float | int:
    value = parse_decimal(raw.replace("%", ""))
    if value < 0 or value > 100:
        raise FieldCoercionError(raw, "percentage out of range")
    return int(value) if value.is_integer() and "," not in raw and "." not in raw else value


def convert_wind(speed_ms: float, unit: WindUnit | str) -> float | int:
    """Convert a wind speed in metres per second to ``unit``."""
    unit = WindUnit(unit)
    if unit is WindUnit.bft:
        if speed_ms <= 0:
            return 0
        beaufort = round((speed_ms / BEAUFORT_FACTOR) ** (2.0 / 3.0))
        return max(0, min(BEAUFORT_MAX, beaufort))
    factor = _WIND_FACTORS.get(unit)
    if factor is None:
        return speed_ms
    return round(speed_ms * factor, 1)


def parse_state(raw: str, shape: ValueShape) -> bool:
    vocabulary = _STATE_WORDS.get(shape)
    if vocabulary is None:
        raise FieldCoercionError(raw, f"no vocabulary for {shape.value}")
    word = raw.strip().lower()
    if word not in vocabulary:
        raise FieldCoercionError(raw, "unrecognized state word")
    return vocabulary[word]


def sanitize_name(name: str, fallback: str = "Sensor") -> str:
    """Convert a display name into a storage-safe path segment."""
    text = "".join(_TRANSLITERATIONS.get(ch, ch) for ch in name)
    folded = unicodedata.normalize("NFKD", text)
    ascii_only = "".join(ch for ch in folded if not unicodedata.combining(ch))
    segment = _SEGMENT_INVALID.sub("_", ascii_only)
    segment = _SEGMENT_REPEATS.sub("_", segment).strip("_-")
    return segment or fallback


def wind_unit_label(unit: WindUnit) -> str:
    return "Bft" if unit is WindUnit.bft else unit.value


class Normalizer:
    """Typed value coercion bound to the configured wind unit."""

    def __init__(self, wind_unit: WindUnit = WindUnit.ms) -> None:
        self.wind_unit = WindUnit(wind_unit)

    def coerce(self, raw: str, shape: ValueShape) -> FieldValue:
        """Return the typed value for ``raw`` or raise :class:`FieldCoercionError`.

        Placeholder tokens yield :data:`UNAVAILABLE` for every numeric shape.
        """
        if shape in (ValueShape.decimal, ValueShape.percent, ValueShape.wind) and is_placeholder(raw):
            return UNAVAILABLE
        if shape is ValueShape.decimal:
            return parse_decimal(raw)
        if shape is ValueShape.percent:
            return parse_percent(raw)
        if shape is ValueShape.wind:
            return convert_wind(parse_decimal(raw), self.wind_unit)
        if shape is ValueShape.text:
            text = " ".join(raw.split())
            if not text:
                raise FieldCoercionError(raw, "empty text value")
            return text
        return parse_state(raw, shape)

    def describe(self, key: FieldKey) -> FieldDescriptor:
        return describe_field(key, self.wind_unit)


def describe_field(key: FieldKey, wind_unit: WindUnit = WindUnit.ms) -> FieldDescriptor:
    role, unit, name, value_type = _DESCRIPTORS[key]
    if key in (FieldKey.wind_speed, FieldKey.wind_gust):
        unit = wind_unit_label(WindUnit(wind_unit))
    return FieldDescriptor(role=role, unit=unit, name=name, value_type=value_type)
