"""Pydantic schemas for the state store and the HTTP status surface."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class ObjectType(str, Enum):
    """Levels of the state tree."""

    device = "device"
    channel = "channel"
    state = "state"


class ValueType(str, Enum):
    """Declared value types of state objects."""

    number = "number"
    string = "string"
    boolean = "boolean"


class ObjectCommon(BaseModel):
    """Human readable metadata shared by all objects."""

    name: str
    type: Optional[ValueType] = None
    role: str = ""
    unit: Optional[str] = None
    read: bool = True
    write: bool = False


class StoredObject(BaseModel):
    """An addressable node of the state tree."""

    id: str
    type: ObjectType
    common: ObjectCommon
    native: Dict[str, Any] = Field(default_factory=dict)


class StateValue(BaseModel):
    """Current value of a state object."""

    val: Union[bool, int, float, str, None] = None
    ack: bool = True
    ts: datetime
