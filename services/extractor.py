"""Sensor block extraction from the vendor's overview markup.

The portal has shipped several page layouts over time. Each layout is a
:class:`LayoutDetector`; :class:`Extractor` tries them in priority order and
the first one whose ``matches`` returns ``True`` produces the readings. Every
layout reduces a sensor block to flat text and runs the same field table over
it, so field detection does not depend on the layout.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag

from models.records import FieldIssue, FieldKey, FieldValue, SensorReading, ValueShape
from services.errors import FieldCoercionError, ParseError
from services.normalizer import Normalizer

logger = logging.getLogger(__name__)

_NUMBER = r"[-+]?\d+(?:[.,]\d+)?(?!\w|[.,]\d)"
# any other token is captured too so that placeholders and garbage reach the normalizer
_NUMERIC_VALUE = rf"(?P<value>{_NUMBER}|\S+)"
_WORD_VALUE = r"(?P<value>[^\W\d_][\w/-]*)"
_SEPARATOR = r"\s*:?\s*"

_ID_PATTERN = re.compile(r"\bID\s*:?\s*(?P<id>[0-9A-Fa-f]{6,16})\b")
_TIMESTAMP_PATTERN = re.compile(
    r"\b(?:Zeitpunkt|Timestamp)\s*:?\s*"
    r"(?P<timestamp>\d{1,2}\.\d{1,2}\.\d{2,4}\s+\d{1,2}:\d{2}(?::\d{2})?)"
)

_HEADING_TAGS = ["h1", "h2", "h3"]
_MAX_INLINE_NAME = 40


@dataclass(frozen=True)
class FieldRule:
    """Maps one label pattern onto a field key.

    ``generic`` rules are only applied when no other rule of the same
    ``family`` matched the block.
    """

    key: FieldKey
    label: str
    shape: ValueShape
    family: str
    generic: bool = False

    @property
    def pattern(self) -> re.Pattern[str]:
        return _compile_rule(self.label, self.shape)


@lru_cache(maxsize=None)
def _compile_rule(label: str, shape: ValueShape) -> re.Pattern[str]:
    numeric = shape in (ValueShape.decimal, ValueShape.percent, ValueShape.wind)
    value = _NUMERIC_VALUE if numeric else _WORD_VALUE
    return re.compile(rf"\b(?:{label}){_SEPARATOR}{value}", re.IGNORECASE)


def _average(window: str) -> str:
    return (
        rf"Luftf(?:euchte|\.)?\s*(?:Durchschn(?:itt|\.)?\s*)?{window}\b\.?"
        r"(?:\s*Durchschn(?:itt|\.)?)?"
    )


_INSIDE = r"\s+(?:Innen|In)\b"
_OUTSIDE = r"\s+(?:Außen|Aussen|Out)\b"

FIELD_RULES: Tuple[FieldRule, ...] = (
    FieldRule(FieldKey.temperature_in, r"Temperatur" + _INSIDE, ValueShape.decimal, "temperature"),
    FieldRule(FieldKey.temperature_out, r"Temperatur" + _OUTSIDE, ValueShape.decimal, "temperature"),
    FieldRule(FieldKey.temperature_cable, r"Temperatur\s+Kabel(?:sensor)?\b", ValueShape.decimal, "temperature"),
    FieldRule(FieldKey.temperature_1, r"Temperatur\s+1\b", ValueShape.decimal, "temperature"),
    FieldRule(FieldKey.temperature_2, r"Temperatur\s+2\b", ValueShape.decimal, "temperature"),
    FieldRule(FieldKey.temperature_3, r"Temperatur\s+3\b", ValueShape.decimal, "temperature"),
    FieldRule(FieldKey.humidity_avg_3h, _average(r"3\s*h"), ValueShape.percent, "humidity_avg"),
    FieldRule(FieldKey.humidity_avg_24h, _average(r"24\s*h"), ValueShape.percent, "humidity_avg"),
    FieldRule(FieldKey.humidity_avg_7d, _average(r"7\s*(?:d|Tage?)"), ValueShape.percent, "humidity_avg"),
    FieldRule(FieldKey.humidity_avg_30d, _average(r"30\s*(?:d|Tage?)"), ValueShape.percent, "humidity_avg"),
    FieldRule(FieldKey.humidity_in, r"Luftfeuchte" + _INSIDE, ValueShape.percent, "humidity"),
    FieldRule(FieldKey.humidity_out, r"Luftfeuchte" + _OUTSIDE, ValueShape.percent, "humidity"),
    FieldRule(FieldKey.humidity_1, r"Luftfeuchte\s+1\b", ValueShape.percent, "humidity"),
    FieldRule(FieldKey.humidity_2, r"Luftfeuchte\s+2\b", ValueShape.percent, "humidity"),
    FieldRule(FieldKey.humidity_3, r"Luftfeuchte\s+3\b", ValueShape.percent, "humidity"),
    FieldRule(FieldKey.rain_1h, r"Regen\s+(?:1\s*h|letzte\s+Stunde)\b", ValueShape.decimal, "rain_1h"),
    FieldRule(FieldKey.rain_24h, r"Regen\s+24\s*h\b", ValueShape.decimal, "rain_24h"),
    FieldRule(FieldKey.rain_total, r"Regen\s+(?:gesamt|total)\b", ValueShape.decimal, "rain"),
    FieldRule(FieldKey.wind_speed, r"Windgeschwindigkeit|Wind(?=\s)", ValueShape.wind, "wind_speed"),
    FieldRule(FieldKey.wind_gust, r"Windböe|Böe|Boe|Böen", ValueShape.wind, "wind_gust"),
    FieldRule(FieldKey.wind_direction, r"Windrichtung", ValueShape.text, "wind_direction"),
    FieldRule(FieldKey.battery, r"Batteriestatus|Batterie|Battery", ValueShape.battery, "battery"),
    FieldRule(FieldKey.contact, r"Kontaktsensor|Kontakt|Contact", ValueShape.open_closed, "contact"),
    FieldRule(FieldKey.wet, r"Wassermelder|Wassersensor|Feuchtesensor", ValueShape.wet_dry, "wet"),
    # generic labels last
    FieldRule(FieldKey.temperature, r"Temperatur", ValueShape.decimal, "temperature", generic=True),
    FieldRule(FieldKey.humidity, r"Luftfeuchtigkeit|Luftfeuchte", ValueShape.percent, "humidity", generic=True),
    FieldRule(FieldKey.rain_total, r"Regen", ValueShape.decimal, "rain", generic=True),
)


def flatten_text(text: str) -> str:
    return " ".join(text.split())


def extract_fields(
    text: str,
    normalizer: Normalizer,
    rules: Sequence[FieldRule] = FIELD_RULES,
) -> Tuple[dict[FieldKey, FieldValue], List[FieldIssue]]:
    """Run the field table over one block of flat text.

    Text claimed by an earlier rule is not matched again, so a generic label
    never reads a value out of a qualified one such as ``Regen 1 h``.
    """
    fields: dict[FieldKey, FieldValue] = {}
    issues: List[FieldIssue] = []
    matched_families: set[str] = set()
    claimed: List[Tuple[int, int]] = []

    for rule in sorted(rules, key=lambda item: item.generic):
        if rule.key in fields:
            continue
        if rule.generic and rule.family in matched_families:
            continue
        match = _first_unclaimed(rule.pattern, text, claimed)
        if match is None:
            continue
        matched_families.add(rule.family)
        raw = match.group("value")
        try:
            fields[rule.key] = normalizer.coerce(raw, rule.shape)
        except FieldCoercionError as exc:
            # only the label is claimed; the token may be the next label
            claimed.append((match.start(), match.start("value")))
            issues.append(FieldIssue(key=rule.key, raw=raw, reason=exc.reason))
            logger.debug(
                "Dropping field %s",
                rule.key.value,
                extra={"field": rule.key.value, "reason": exc.reason},
            )
        else:
            claimed.append(match.span())
    return fields, issues


def _first_unclaimed(
    pattern: re.Pattern[str], text: str, claimed: Sequence[Tuple[int, int]]
) -> Optional[re.Match[str]]:
    for match in pattern.finditer(text):
        start, end = match.span()
        if not any(start < taken_end and taken_start < end for taken_start, taken_end in claimed):
            return match
    return None


def device_id_from_href(href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    query = parse_qs(urlparse(href).query)
    for key, values in query.items():
        if key.lower() == "deviceid" and values and values[0].strip():
            return values[0].strip()
    return None


class Document:
    """Markup parsed once and shared by all layout detectors."""

    def __init__(self, markup: str) -> None:
        self.markup = markup
        self.soup = BeautifulSoup(markup, "html.parser")
        for tag in self.soup(["script", "style", "head", "title"]):
            tag.decompose()
        self.text = flatten_text(self.soup.get_text(" ", strip=True))


def _element_text(element: Tag) -> str:
    return flatten_text(element.get_text(" ", strip=True))


def build_reading(
    name: Optional[str],
    index: int,
    text: str,
    normalizer: Normalizer,
    device_id: Optional[str] = None,
) -> SensorReading:
    """Assemble a reading from a block's flat text."""
    if not text and not device_id:
        raise ParseError(f"sensor block {index} is empty")

    if device_id is None:
        id_match = _ID_PATTERN.search(text)
        device_id = id_match.group("id") if id_match else None
    ts_match = _TIMESTAMP_PATTERN.search(text)
    fields, issues = extract_fields(text, normalizer)
    return SensorReading(
        name=name or f"Sensor_{index}",
        id=device_id,
        timestamp=ts_match.group("timestamp") if ts_match else None,
        fields=fields,
        issues=issues,
    )


class LayoutDetector:
    """Base class for one known page layout."""

    name = "layout"

    def __init__(self, normalizer: Normalizer) -> None:
        self.normalizer = normalizer

    def matches(self, document: Document) -> bool:
        raise NotImplementedError

    def extract(self, document: Document) -> List[SensorReading]:
        raise NotImplementedError

    def _collect(self, blocks: Iterable[Tuple[Optional[str], str, Optional[str]]]) -> List[SensorReading]:
        readings: List[SensorReading] = []
        for index, (name, text, device_id) in enumerate(blocks, start=1):
            try:
                readings.append(build_reading(name, index, text, self.normalizer, device_id))
            except ParseError as exc:
                logger.warning(
                    "Skipping sensor block %d: %s",
                    index,
                    exc,
                    extra={"layout": self.name, "reason": str(exc)},
                )
            except Exception:  # noqa: BLE001 - one broken block must not hide the rest
                logger.exception(
                    "Failed to extract sensor block %d",
                    index,
                    extra={"layout": self.name},
                )
        return readings


class SensorBlockLayout(LayoutDetector):
    """One container per sensor, tagged with the ``sensor`` CSS class."""

    name = "sensor_block"
    selector = ".sensor"

    def matches(self, document: Document) -> bool:
        return document.soup.select_one(self.selector) is not None

    def extract(self, document: Document) -> List[SensorReading]:
        return self._collect(self._blocks(document))

    def _blocks(self, document: Document) -> Iterable[Tuple[Optional[str], str, Optional[str]]]:
        for block in document.soup.select(self.selector):
            name = None
            heading = block.find(_HEADING_TAGS)
            if heading is None:
                heading = block.find("a")
            if heading is None:
                heading = block.find_previous(_HEADING_TAGS)
            if heading is not None:
                name = _element_text(heading) or None

            device_id = None
            for link in block.find_all("a", href=True):
                device_id = device_id_from_href(link["href"])
                if device_id:
                    break
            yield name, _element_text(block), device_id


class HeadingSequenceLayout(LayoutDetector):
    """Flat ``h5`` label / ``h4`` value pairs; each ``ID`` label opens a sensor."""

    name = "heading_sequence"

    def matches(self, document: Document) -> bool:
        return any(_element_text(label) == "ID" for label in document.soup.find_all("h5"))

    def extract(self, document: Document) -> List[SensorReading]:
        return self._collect(self._blocks(document))

    def _blocks(self, document: Document) -> Iterable[Tuple[Optional[str], str, Optional[str]]]:
        device_links: dict[str, Tag] = {}
        for link in document.soup.find_all("a", href=True):
            device_id = device_id_from_href(link["href"])
            if device_id and _element_text(link):
                device_links.setdefault(device_id.upper(), link)

        groups: List[Tuple[Tag, List[Tuple[str, str]]]] = []
        headings = document.soup.find_all(["h4", "h5"])
        for position, heading in enumerate(headings):
            if heading.name != "h5":
                continue
            label = _element_text(heading)
            following = headings[position + 1] if position + 1 < len(headings) else None
            value = _element_text(following) if following is not None and following.name == "h4" else ""
            if label == "ID":
                groups.append((heading, []))
            if groups:
                groups[-1][1].append((label, value))

        # a heading names at most one sensor
        used: List[Tag] = []
        for start, pairs in groups:
            text = " ".join(f"{label} {value}".strip() for label, value in pairs)
            device_id = next((value for label, value in pairs if label == "ID" and value), None)
            heading = device_links.get(device_id.upper()) if device_id else None
            if heading is None:
                heading = start.find_previous(_HEADING_TAGS + ["a"])
            name = None
            if heading is not None and not any(heading is seen for seen in used):
                used.append(heading)
                name = _element_text(heading) or None
            yield name, text, device_id


class CompactLayout(LayoutDetector):
    """A single sensor page without per-sensor grouping."""

    name = "compact"

    def matches(self, document: Document) -> bool:
        return len(_ID_PATTERN.findall(document.text)) == 1

    def extract(self, document: Document) -> List[SensorReading]:
        id_match = _ID_PATTERN.search(document.text)
        name = None
        for link in document.soup.find_all("a", href=True):
            if device_id_from_href(link["href"]):
                name = _element_text(link) or None
                break
        if name is None:
            heading = document.soup.find(_HEADING_TAGS)
            if heading is not None:
                name = _element_text(heading) or None
        if name is None and id_match is not None:
            preceding = document.text[: id_match.start()].strip()
            if 0 < len(preceding) <= _MAX_INLINE_NAME:
                name = preceding
        return self._collect([(name, document.text, None)])


class WholeDocumentLayout(LayoutDetector):
    """Last resort: scan the whole document as one sensor."""

    name = "whole_document"

    def matches(self, document: Document) -> bool:
        return True

    def extract(self, document: Document) -> List[SensorReading]:
        if not document.text:
            return []
        heading = document.soup.find(_HEADING_TAGS)
        name = _element_text(heading) if heading is not None else None
        readings = self._collect([(name or None, document.text, None)])
        return [reading for reading in readings if reading.fields]


def merge_duplicates(readings: Iterable[SensorReading]) -> List[SensorReading]:
    """Fold readings that share a vendor id into the first one seen."""
    merged: List[SensorReading] = []
    by_id: dict[str, SensorReading] = {}
    for reading in readings:
        if reading.id is None:
            merged.append(reading)
            continue
        key = reading.id.upper()
        existing = by_id.get(key)
        if existing is None:
            by_id[key] = reading
            merged.append(reading)
            continue
        for field_key, value in reading.fields.items():
            existing.fields.setdefault(field_key, value)
        existing.issues.extend(reading.issues)
        if existing.timestamp is None:
            existing.timestamp = reading.timestamp
    return merged


class Extractor:
    """Dispatches markup to the first matching layout."""

    def __init__(
        self,
        normalizer: Optional[Normalizer] = None,
        layouts: Optional[Sequence[LayoutDetector]] = None,
    ) -> None:
        self.normalizer = normalizer or Normalizer()
        if layouts is None:
            layouts = (
                SensorBlockLayout(self.normalizer),
                HeadingSequenceLayout(self.normalizer),
                CompactLayout(self.normalizer),
                WholeDocumentLayout(self.normalizer),
            )
        self.layouts: Tuple[LayoutDetector, ...] = tuple(layouts)

    def detect(self, document: Document) -> Optional[LayoutDetector]:
        for layout in self.layouts:
            if layout.matches(document):
                return layout
        return None

    def extract(self, markup: str) -> List[SensorReading]:
        document = Document(markup)
        layout = self.detect(document)
        if layout is None:
            logger.warning("No known layout matched the page", extra={"reason": "no layout"})
            return []

        readings = merge_duplicates(layout.extract(document))
        if not readings:
            logger.warning(
                "No sensor blocks found in page",
                extra={"layout": layout.name, "reason": "empty page"},
            )
        else:
            logger.debug(
                "Extracted sensor readings",
                extra={"layout": layout.name, "reading_count": len(readings)},
            )
        return readings
