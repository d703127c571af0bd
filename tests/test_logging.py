"""
Tests for mailtrail/utils/logging.py - JSON lines and correlation scopes.
"""
import json
import logging
import sys

from mailtrail.utils.logging import (
    StructuredJsonFormatter,
    correlation_scope,
    event_fields,
    get_correlation_id,
    set_correlation_id,
)


def _record(msg="hello %s", args=("world",), exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("mailtrail.test", logging.WARNING, __file__, 1, msg, args, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatter:
    def test_one_json_object_with_extras(self):
        with correlation_scope("cid-1"):
            line = StructuredJsonFormatter().format(_record(message_id="m-1", receiver="https://r"))

        entry = json.loads(line)
        assert entry["message"] == "hello world"
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "mailtrail.test"
        assert entry["correlation_id"] == "cid-1"
        assert entry["message_id"] == "m-1"
        assert entry["receiver"] == "https://r"
        assert "args" not in entry
        assert "\n" not in line

    def test_exception_is_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = _record(exc_info=sys.exc_info())

        entry = json.loads(StructuredJsonFormatter().format(record))
        assert "ValueError: bad" in entry["exception"]


class TestCorrelationScope:
    def test_restores_outer_id(self):
        set_correlation_id("outer")
        with correlation_scope() as cid:
            assert get_correlation_id() == cid
            assert cid != "outer"
        assert get_correlation_id() == "outer"


class TestEventFields:
    def test_drops_none_and_reads_event(self):
        class _Event:
            message_id = "m-1"
            event_type = "Open"
            account_id = "acct-1"

        assert event_fields(_Event(), queue_message_id="q-1", receiver=None) == {
            "message_id": "m-1",
            "event_type": "Open",
            "account_id": "acct-1",
            "queue_message_id": "q-1",
        }
