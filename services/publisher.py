"""Maps sensor readings onto the state tree."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from app.schemas import ObjectCommon, ObjectType, StoredObject, ValueType
from datastore.state_store import ScalarValue, StateStore
from models.records import FieldKey, FieldValue, Placeholder, SensorReading
from services.errors import SinkWriteError
from services.normalizer import Normalizer, sanitize_name

logger = logging.getLogger(__name__)

INFO_CHANNEL = "info"
CONNECTION_STATE = "info.connection"


def phone_group_id(phone_id: str) -> str:
    return f"PhoneGroup_{sanitize_name(phone_id, fallback='unknown')}"


def storable(value: FieldValue) -> ScalarValue:
    """Unavailable readings are written as an explicit null."""
    if isinstance(value, Placeholder):
        return None
    return value


class ReadingPublisher:
    """Ensures nodes exist and writes acknowledged values for each reading."""

    def __init__(
        self,
        store: StateStore,
        normalizer: Normalizer,
        show_battery: bool = True,
        show_timestamp: bool = True,
    ) -> None:
        self.store = store
        self.normalizer = normalizer
        self.show_battery = show_battery
        self.show_timestamp = show_timestamp

    def publish(self, phone_id: str, readings: Sequence[SensorReading]) -> int:
        """Write all readings of one phone identifier; return the number of values written."""
        group = phone_group_id(phone_id)
        self._ensure(group, ObjectType.device, ObjectCommon(name=f"Phone {phone_id}", role="device"))

        written = 0
        for segment, reading in zip(self._segments(readings), readings):
            channel = f"{group}.{segment}"
            self._ensure(
                channel,
                ObjectType.channel,
                ObjectCommon(name=reading.name, role="sensor"),
                native={"id": reading.id} if reading.id else None,
            )
            if reading.id:
                written += self._write_text(f"{channel}.id", "Sensor ID", "info.serial", reading.id)
            if reading.timestamp and self.show_timestamp:
                written += self._write_text(
                    f"{channel}.timestamp", "Last update", "text", reading.timestamp
                )
            for key, value in reading.fields.items():
                if key is FieldKey.battery and not self.show_battery:
                    continue
                written += self._write_field(f"{channel}.{key.value}", key, value)
        return written

    def publish_connection(self, connected: bool) -> None:
        self._ensure(INFO_CHANNEL, ObjectType.channel, ObjectCommon(name="Information"))
        common = ObjectCommon(
            name="Connected to portal",
            type=ValueType.boolean,
            role="indicator.connected",
        )
        if self._ensure(CONNECTION_STATE, ObjectType.state, common):
            self._write(CONNECTION_STATE, connected)

    def _segments(self, readings: Iterable[SensorReading]) -> list[str]:
        segments: list[str] = []
        for index, reading in enumerate(readings, start=1):
            segment = sanitize_name(reading.name, fallback=f"Sensor_{index}")
            if segment in segments:
                segment = sanitize_name(f"{segment}_{reading.id or index}")
            segments.append(segment)
        return segments

    def _write_field(self, path: str, key: FieldKey, value: FieldValue) -> int:
        descriptor = self.normalizer.describe(key)
        common = ObjectCommon(
            name=descriptor.name,
            type=ValueType(descriptor.value_type),
            role=descriptor.role,
            unit=descriptor.unit or None,
        )
        if not self._ensure(path, ObjectType.state, common):
            return 0
        return 1 if self._write(path, storable(value)) else 0

    def _write_text(self, path: str, name: str, role: str, value: str) -> int:
        common = ObjectCommon(name=name, type=ValueType.string, role=role)
        if not self._ensure(path, ObjectType.state, common):
            return 0
        return 1 if self._write(path, value) else 0

    def _ensure(
        self,
        path: str,
        object_type: ObjectType,
        common: ObjectCommon,
        native: Optional[dict] = None,
    ) -> bool:
        item = StoredObject(id=path, type=object_type, common=common, native=native or {})
        try:
            self.store.ensure_node(item)
        except SinkWriteError as exc:
            logger.warning(
                "Could not create object %s",
                path,
                extra={"state_id": path, "reason": exc.reason},
            )
            return False
        return True

    def _write(self, path: str, value: ScalarValue) -> bool:
        try:
            self.store.write_value(path, value, ack=True)
        except SinkWriteError as exc:
            logger.warning(
                "Could not write value to %s",
                path,
                extra={"state_id": path, "reason": exc.reason},
            )
            return False
        return True
