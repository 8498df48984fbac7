from __future__ import annotations

import logging

from logging_config import ContextualFormatter
from models.records import FieldKey


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="services.poller",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Dropped field %s",
        args=("contact",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_appends_known_context() -> None:
    formatter = ContextualFormatter(fmt="%(levelname)s %(message)s")

    line = formatter.format(
        _record(phone_id="AAA", field=FieldKey.contact, reason="unrecognized state word", ignored="x")
    )

    assert line == (
        "WARNING Dropped field contact | phone_id=AAA field=contact reason=unrecognized state word"
    )


def test_formatter_skips_missing_and_none_values() -> None:
    formatter = ContextualFormatter(fmt="%(message)s", extra_keys=["phone_id", "sensor"])

    assert formatter.format(_record(sensor=None)) == "Dropped field contact"
