"""Tests for the structured logging system (deed_kernel/logging_config.py)."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from deed_kernel.domain.workflow import FormStatus
from deed_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's config."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "deed_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("decision_recorded", extra={"seq": 42, "role": "staff1"})

        record = _parse_log(stream)
        assert record["seq"] == 42
        assert record["role"] == "staff1"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(correlation_id="abc-123", form_id="form-456")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["form_id"] == "form-456"

    def test_context_wins_over_extra(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(form_id="from-context")
        get_logger("test").info("msg", extra={"form_id": "from-extra"})

        assert _parse_log(stream)["form_id"] == "from-context"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_workflow_exception_code_extracted(self):
        """Workflow exceptions carry a .code attribute and structured data."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from deed_kernel.exceptions import OutOfOrderError

        try:
            raise OutOfOrderError("form-1", "staff3", ("staff1",))
        except OutOfOrderError:
            logger.error("decision_refused", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "OUT_OF_ORDER"
        assert record["exc_type"] == "OutOfOrderError"
        assert record["exc_role"] == "staff3"
        assert record["exc_missing_roles"] == ["staff1"]

    def test_refused_form_id_lifted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        from deed_kernel.exceptions import LockedError

        try:
            raise LockedError("form-9", "completed")
        except LockedError:
            get_logger("test").info("operation_refused", exc_info=True)

        assert _parse_log(stream)["form_id"] == "form-9"

    def test_bound_operation_wins_over_extra(self, workflow, make_form, captured_logs):
        form = make_form()
        committed = [r for r in captured_logs() if r["message"] == "workflow_transition_committed"]
        assert committed[-1]["operation"] == "submit"
        assert committed[-1]["form_id"] == str(form.id)

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "form_id" not in record

    def test_uuid_and_enum_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"staff_id": uid, "status": FormStatus.IN_PROGRESS})

        record = _parse_log(stream)
        assert record["staff_id"] == str(uid)
        assert record["status"] == "in-progress"

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # Default level is INFO, so the debug line is dropped.
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= set(record)


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", actor_role="staff2")
        assert LogContext.get_all() == {"correlation_id": "x", "actor_role": "staff2"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        assert "form_id" not in LogContext.get_all()
        with LogContext.bind(form_id="temp"):
            assert LogContext.get_all()["form_id"] == "temp"
        assert "form_id" not in LogContext.get_all()

    def test_bind_skips_none(self):
        LogContext.set(actor_id="kept")
        with LogContext.bind(actor_id=None, form_id="f"):
            assert LogContext.get_all()["actor_id"] == "kept"

    def test_all_fields(self):
        LogContext.set(correlation_id="c", actor_id="a", actor_role="admin", form_id="f")
        ctx = LogContext.get_all()
        assert len(ctx) == 4
        assert ctx["actor_role"] == "admin"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        root = logging.getLogger("deed_kernel")
        assert h1 in root.handlers
        assert h2 not in root.handlers

    def test_get_logger_returns_child(self):
        logger = get_logger("services.workflow")
        assert logger.name == "deed_kernel.services.workflow"

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "deed_kernel.deep.nested.module"
