"""Tests for the structured JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

from billing_api.middleware.json_formatter import JSONFormatter


def _record(msg: str = "hello %s", args: tuple = ("world",), exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("billing_api.test", logging.INFO, __file__, 1, msg, args, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self) -> None:
        payload = json.loads(JSONFormatter().format(_record()))
        assert payload["level"] == "INFO"
        assert payload["logger"] == "billing_api.test"
        assert payload["message"] == "hello world"
        assert "timestamp" in payload

    def test_request_and_billing_context(self) -> None:
        record = _record(request={"path": "/ready"}, billing={"tenant_id": "tenant-a"})
        payload = json.loads(JSONFormatter().format(record))
        assert payload["request"] == {"path": "/ready"}
        assert payload["billing"] == {"tenant_id": "tenant-a"}

    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record(exc_info=sys.exc_info())
        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_single_line(self) -> None:
        assert "\n" not in JSONFormatter().format(_record(msg="a\nb", args=()))
