"""Tests for flagengine/core/logging/structured.py."""

from __future__ import annotations

import io
import json
import logging
import sys

import pytest

from flagengine.core.logging.structured import (
    FIELDS_ATTR,
    StructuredFormatter,
    StructuredLogger,
    bind_log_context,
    configure_logging,
    current_log_context,
    log_context,
    reset_log_context,
    timed_operation,
)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    handler = ListHandler()
    logger = logging.getLogger("flagengine.tests")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)


def make_record(msg="msg", level=logging.INFO, **fields):
    record = logging.LogRecord("x", level, __file__, 1, msg, (), None)
    if fields:
        setattr(record, FIELDS_ATTR, fields)
    return record


class TestLogContext:
    """Tests for context binding."""

    def test_context_manager_restores(self):
        assert current_log_context() == {}
        with log_context(flag_key="a.flag", actor="oncall"):
            assert current_log_context() == {"flag_key": "a.flag", "actor": "oncall"}
            with log_context(tenant_id="acme"):
                assert current_log_context()["tenant_id"] == "acme"
            assert "tenant_id" not in current_log_context()
        assert current_log_context() == {}

    def test_none_values_are_dropped(self):
        token = bind_log_context(flag_key="a.flag", user_id=None)
        try:
            assert current_log_context() == {"flag_key": "a.flag"}
        finally:
            reset_log_context(token)


class TestStructuredFormatter:
    """Tests for StructuredFormatter."""

    def test_json_fields(self):
        formatter = StructuredFormatter(service_name="flags", environment="test")
        data = json.loads(formatter.format(make_record("hello", flag_key="a.flag")))

        assert data["msg"] == "hello"
        assert data["level"] == "info"
        assert data["service"] == "flags"
        assert data["env"] == "test"
        assert data["flag_key"] == "a.flag"

    def test_bound_context_included(self):
        formatter = StructuredFormatter()
        with log_context(actor="oncall"):
            data = json.loads(formatter.format(make_record()))
        assert data["actor"] == "oncall"

    def test_call_fields_win_over_context(self):
        formatter = StructuredFormatter()
        with log_context(flag_key="outer.flag"):
            data = json.loads(formatter.format(make_record(flag_key="inner.flag")))
        assert data["flag_key"] == "inner.flag"

    def test_exception(self):
        formatter = StructuredFormatter(include_stack_trace=False)
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "m", (), sys.exc_info())
        data = json.loads(formatter.format(record))
        assert data["error_type"] == "ValueError"
        assert "stack" not in data


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_bound_fields_attached(self, captured):
        log = StructuredLogger("flagengine.tests").bind(component="service")
        log.warning("Kill switch engaged", flag_key="a.flag")

        record = captured.records[0]
        assert record.levelno == logging.WARNING
        assert getattr(record, FIELDS_ATTR) == {"component": "service", "flag_key": "a.flag"}

    def test_records_point_at_caller(self, captured):
        log = StructuredLogger("flagengine.tests")
        log.info("via helper")
        log.log(logging.INFO, "via log")

        assert [r.funcName for r in captured.records] == ["test_records_point_at_caller"] * 2

    def test_bind_does_not_mutate_parent(self, captured):
        parent = StructuredLogger("flagengine.tests")
        parent.bind(component="child")
        parent.info("plain")
        assert getattr(captured.records[0], FIELDS_ATTR) == {}

    def test_level_filtering(self, captured):
        logging.getLogger("flagengine.tests").setLevel(logging.INFO)
        StructuredLogger("flagengine.tests").debug("hidden")
        assert captured.records == []


class TestTimedOperation:
    """Tests for timed_operation."""

    @pytest.mark.asyncio
    async def test_success(self, captured):
        @timed_operation("work", StructuredLogger("flagengine.tests"))
        async def work():
            return 5

        assert await work() == 5
        record = captured.records[0]
        fields = getattr(record, FIELDS_ATTR)
        assert record.getMessage() == "work finished"
        assert fields["outcome"] == "ok"
        assert fields["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_failure_reraises(self, captured):
        @timed_operation(logger=StructuredLogger("flagengine.tests"))
        async def broken():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await broken()
        record = captured.records[0]
        assert record.getMessage() == "broken failed"
        assert getattr(record, FIELDS_ATTR)["error"] == "nope"

    def test_rejects_sync_functions(self):
        with pytest.raises(TypeError):
            @timed_operation()
            def sync():
                pass


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.fixture
    def root(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            yield root
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_installs_single_handler(self, root):
        configure_logging(level=logging.WARNING)
        configure_logging(level=logging.WARNING, json_output=False)
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_json_output_end_to_end(self, root):
        stream = io.StringIO()
        configure_logging(level=logging.INFO, stream=stream, service_name="flags")
        with log_context(flag_key="a.flag"):
            logging.getLogger("flagengine.e2e").info("evaluated")

        data = json.loads(stream.getvalue().strip())
        assert data["msg"] == "evaluated"
        assert data["flag_key"] == "a.flag"
        assert data["service"] == "flags"
