"""Tests for the structured logging system (shepherd_kernel/logging_config.py)."""

import json
import logging
import threading
from datetime import UTC, datetime, timedelta
from io import StringIO
from uuid import uuid4

import pytest

from shepherd_kernel.domain.types import JobState, LeasedJob, Operation
from shepherd_kernel.exceptions import InvalidTicketStateError
from shepherd_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


def _parse_log(stream: StringIO) -> dict:
    return _parse_all_logs(stream)[0]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "shepherd.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("job_leased", extra={"attempt": 2, "operation": "start_vm"})

        record = _parse_log(stream)
        assert record["attempt"] == 2
        assert record["operation"] == "start_vm"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(job_id="job-1", worker_id="worker-a")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["job_id"] == "job-1"
        assert record["worker_id"] == "worker-a"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_shepherd_exception_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise InvalidTicketStateError("t-1", "approved", "approve")
        except InvalidTicketStateError:
            get_logger("test").error("decision_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "INVALID_TICKET_STATE"
        assert record["exc_ticket_id"] == "t-1"
        assert record["exc_current_status"] == "approved"

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"lease_token": uid})

        assert _parse_log(stream)["lease_token"] == str(uid)

    def test_pipeline_fields_lead_the_envelope(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(worker_id="worker-a", job_id="job-1")
        get_logger("test").info("job_leased", extra={"queue_depth": 3, "event_id": "e-1"})

        record = _parse_log(stream)
        assert list(record) == [
            "ts", "level", "logger", "message", "event_id", "job_id", "worker_id", "queue_depth",
        ]

    def test_extra_wins_over_context(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        with LogContext.bind(attempt=1):
            get_logger("test").info("retry", extra={"attempt": 2})

        assert _parse_log(stream)["attempt"] == 2

    def test_enums_and_durations_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info(
            "job_state", extra={"state": JobState.RETRYABLE, "delay": timedelta(seconds=4)},
        )

        record = _parse_log(stream)
        assert record["state"] == "retryable"
        assert record["delay"] == 4.0

    def test_debug_filtered_at_info(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["first", "second"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:

    def test_set_and_get(self):
        LogContext.set(event_id="e", ticket_id="t")
        assert LogContext.get_all() == {"event_id": "e", "ticket_id": "t"}

    def test_clear(self):
        LogContext.set(actor="alice")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_previous(self):
        LogContext.set(actor="outer")
        with LogContext.bind(actor="inner", job_id="j"):
            assert LogContext.get_all() == {"actor": "inner", "job_id": "j"}
        assert LogContext.get_all() == {"actor": "outer"}

    def test_context_is_per_thread(self):
        LogContext.set(worker_id="main")
        seen = {}

        def other():
            seen.update(LogContext.get_all())

        t = threading.Thread(target=other)
        t.start()
        t.join()
        assert seen == {}
        assert LogContext.get_all() == {"worker_id": "main"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="jobid"):
            with LogContext.bind(jobid="j"):
                pass
        assert LogContext.get_all() == {}

    def test_bind_job(self):
        leased = LeasedJob(
            job_id=uuid4(),
            event_id=uuid4(),
            operation=Operation.STOP_VM,
            aggregate_id="vm-1",
            attempt=2,
            max_attempts=5,
            worker_id="worker-a",
            lease_token=uuid4(),
            lease_expires_at=datetime(2026, 1, 1, tzinfo=UTC),
        )
        with LogContext.bind_job(leased):
            fields = LogContext.get_all()
        assert fields == {
            "job_id": str(leased.job_id),
            "event_id": str(leased.event_id),
            "aggregate_id": "vm-1",
            "operation": "stop_vm",
            "attempt": 2,
            "worker_id": "worker-a",
            "lease_token": str(leased.lease_token),
        }

    def test_carry_into_another_thread(self):
        seen = {}

        def other():
            seen.update(LogContext.get_all())

        with LogContext.bind(job_id="job-1"):
            t = threading.Thread(target=LogContext.carry(other))
        t.start()
        t.join()
        assert seen == {"job_id": "job-1"}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        assert len(logging.getLogger("shepherd").handlers) == 1

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("worker.dispatcher").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["logger"] == "shepherd.worker.dispatcher"
