"""Structured log formatter and root logger configuration."""

from __future__ import annotations

import logging

import pytest

from backend.app.infra.logging import StructuredFormatter, configure_logging

pytestmark = [pytest.mark.infra]


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "backend.app.test", logging.INFO, __file__, 1, "entry_completed", None, None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_appends_sorted_extra_fields():
    formatter = StructuredFormatter("%(levelname)s %(message)s")

    line = formatter.format(
        _record(entry_id="e1", calories_kcal=240.0, notes="two eggs", _private="x")
    )

    assert line == 'INFO entry_completed calories_kcal=240.0 entry_id=e1 notes="two eggs"'


def test_formatter_leaves_plain_records_alone():
    assert StructuredFormatter("%(message)s").format(_record()) == "entry_completed"


def test_configure_logging_installs_one_handler(monkeypatch):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)

    configure_logging({"level": "debug"})
    configure_logging({"level": "warning", "format": "%(message)s"})

    structured = [h for h in root.handlers if getattr(h, "_macrolog_structured", False)]
    assert len(structured) == 1
    assert root.level == logging.WARNING
    assert isinstance(structured[0].formatter, StructuredFormatter)


def test_unknown_level_falls_back_to_info(monkeypatch):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)

    configure_logging({"level": "chatty"})

    assert root.level == logging.INFO
