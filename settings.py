from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from models.records import PollTarget, WindUnit


_PHONE_IDS_ENV = "MOBILE_ALERTS_PHONE_IDS"
_HOSTNAME_ENV = "MOBILE_ALERTS_HOSTNAME"
_PATH_ENV = "MOBILE_ALERTS_PATH"
_POLL_INTERVAL_ENV = "MOBILE_ALERTS_POLL_INTERVAL"
_REQUEST_TIMEOUT_ENV = "MOBILE_ALERTS_REQUEST_TIMEOUT"
_WIND_UNIT_ENV = "MOBILE_ALERTS_WIND_UNIT"
_LEGACY_POST_ENV = "MOBILE_ALERTS_LEGACY_POST"
_SHOW_BATTERY_ENV = "MOBILE_ALERTS_SHOW_BATTERY"
_SHOW_TIMESTAMP_ENV = "MOBILE_ALERTS_SHOW_TIMESTAMP"
_STORE_PATH_ENV = "STATE_STORE_PERSISTENCE_PATH"
_LOG_LEVEL_ENV = "LOG_LEVEL"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    phone_ids: Tuple[str, ...]
    hostname: str
    path: str
    poll_interval: float
    request_timeout: float
    wind_unit: WindUnit
    legacy_post: bool
    show_battery: bool
    show_timestamp: bool
    store_persistence_path: Optional[str]
    log_level: str

    @property
    def poll_targets(self) -> Tuple[PollTarget, ...]:
        return tuple(
            PollTarget(phone_id=phone_id, interval=self.poll_interval)
            for phone_id in self.phone_ids
        )


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in _TRUE_VALUES:
        return True
    if candidate in _FALSE_VALUES:
        return False
    return default


def _read_phone_ids() -> Tuple[str, ...]:
    value = os.getenv(_PHONE_IDS_ENV) or ""
    phone_ids: list[str] = []
    for part in value.split(","):
        candidate = part.strip()
        if candidate and candidate not in phone_ids:
            phone_ids.append(candidate)
    return tuple(phone_ids)


def _read_wind_unit(default: WindUnit) -> WindUnit:
    value = os.getenv(_WIND_UNIT_ENV)
    if value is None:
        return default
    candidate = value.strip().lower()
    try:
        return WindUnit(candidate)
    except ValueError:
        return default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    path = _read_str_env(_PATH_ENV, "/Home/SensorsOverview")
    return Settings(
        phone_ids=_read_phone_ids(),
        hostname=_read_str_env(_HOSTNAME_ENV, "measurements.mobile-alerts.eu"),
        path=path if path.startswith("/") else f"/{path}",
        poll_interval=_read_positive_float(_POLL_INTERVAL_ENV, 300.0),
        request_timeout=_read_positive_float(_REQUEST_TIMEOUT_ENV, 15.0),
        wind_unit=_read_wind_unit(WindUnit.ms),
        legacy_post=_read_bool(_LEGACY_POST_ENV, False),
        show_battery=_read_bool(_SHOW_BATTERY_ENV, True),
        show_timestamp=_read_bool(_SHOW_TIMESTAMP_ENV, True),
        store_persistence_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/states.json"),
        log_level=_read_log_level("INFO"),
    )
