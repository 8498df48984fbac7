from __future__ import annotations
import json
import logging
import math
import re
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Optional, Union

from pydantic import ValidationError

from app.schemas import ObjectType, StateValue, StoredObject, ValueType
from services.errors import SinkWriteError
from settings import get_settings

logger = logging.getLogger(__name__)

_PATH_PATTERN = re.compile(r"^[A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*$")

ScalarValue = Union[bool, int, float, str, None]


class StateStore:
    """Hierarchical key-value store of objects and their current values."""

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._objects: Dict[str, StoredObject] = {}
        self._states: Dict[str, StateValue] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def ensure_node(self, item: StoredObject) -> bool:
        """Create ``item`` unless an object with its id exists; return whether it was created."""
        if not _PATH_PATTERN.match(item.id):
            raise SinkWriteError(item.id, "invalid object id")
        with self._lock:
            if item.id in self._objects:
                return False
            self._objects[item.id] = item.model_copy(deep=True)
            try:
                self._persist(item.id)
            except SinkWriteError:
                del self._objects[item.id]
                raise
        logger.debug("Created object", extra={"state_id": item.id})
        return True

    def write_value(self, path: str, value: ScalarValue, ack: bool = True) -> StateValue:
        with self._lock:
            item = self._objects.get(path)
            if item is None:
                raise SinkWriteError(path, "object does not exist")
            if item.type is not ObjectType.state:
                raise SinkWriteError(path, f"cannot write a value to a {item.type.value}")
            if not _matches_type(value, item.common.type):
                raise SinkWriteError(
                    path, f"value {value!r} does not match type {item.common.type}"
                )
            try:
                state = StateValue(val=value, ack=ack, ts=datetime.now(timezone.utc))
            except ValidationError as exc:
                raise SinkWriteError(path, str(exc)) from exc
            previous = self._states.get(path)
            self._states[path] = state
            try:
                self._persist(path)
            except SinkWriteError:
                if previous is None:
                    del self._states[path]
                else:
                    self._states[path] = previous
                raise
            return state.model_copy(deep=True)

    def get_object(self, path: str) -> Optional[StoredObject]:
        with self._lock:
            item = self._objects.get(path)
            if item is None:
                return None
            return item.model_copy(deep=True)

    def get_state(self, path: str) -> Optional[StateValue]:
        with self._lock:
            state = self._states.get(path)
            if state is None:
                return None
            return state.model_copy(deep=True)

    def scan_states(self) -> Dict[str, StateValue]:
        """Return deep copies of all current values keyed by state id."""

        with self._lock:
            return {path: state.model_copy(deep=True) for path, state in self._states.items()}

    def _persist(self, path: str) -> None:
        if not self.persistence_path:
            return
        payload = {
            "objects": {
                path: item.model_dump(mode="json") for path, item in self._objects.items()
            },
            "states": {
                path: state.model_dump(mode="json") for path, state in self._states.items()
            },
        }
        try:
            self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))
        except OSError as exc:
            raise SinkWriteError(path, f"could not persist store: {exc}") from exc

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for path, payload in data.get("objects", {}).items():
            self._objects[path] = StoredObject.model_validate(payload)
        for path, payload in data.get("states", {}).items():
            self._states[path] = StateValue.model_validate(payload)


def _matches_type(value: ScalarValue, value_type: Optional[ValueType]) -> bool:
    if value is None or value_type is None:
        return True
    if value_type is ValueType.boolean:
        return isinstance(value, bool)
    if value_type is ValueType.number:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return math.isfinite(value)
    return isinstance(value, str)


@lru_cache
def build_default_store(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> StateStore:
    settings = get_settings()
    store_name = "mobile-alerts" if name is None else name
    store_path = settings.store_persistence_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return StateStore(name=store_name, persistence_path=persistence)
