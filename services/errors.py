"""Exceptions raised by the scraping pipeline."""

from __future__ import annotations


class ScraperError(Exception):
    """Base class for pipeline errors."""


class NetworkError(ScraperError):
    """The overview page could not be fetched (timeout, status, connection)."""


class ParseError(ScraperError):
    """A page or block has no recognizable sensor structure."""


class FieldCoercionError(ScraperError):
    """A matched substring could not be turned into a typed value."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"{reason}: {raw!r}")
        self.raw = raw
        self.reason = reason


class SinkWriteError(ScraperError):
    """The state store rejected an object definition or a value."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
