"""Tests for structured logging.

Log lines are rendered at emit time by a JsonFormatter handler so the
context fields (correlation_id, alert_id) reflect what was bound when
the engine or a request logged them.
"""

import json
import logging
from datetime import timedelta

import pytest
from factories import save_policy

from src.logging_config import (
    JsonFormatter,
    TextFormatter,
    bind_alert_id,
    correlation_id_ctx,
    get_logger,
    setup_logging,
)
from src.middleware import CORRELATION_ID_HEADER
from src.models.escalation_policy import AlertSeverity


class JsonLines(logging.Handler):
    """Collects every record as the JSON object the service would print."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.setFormatter(JsonFormatter(service_name="oncall-test"))
        self.lines: list[dict] = []

    def emit(self, record):
        self.lines.append(json.loads(self.format(record)))

    def find(self, message: str) -> list[dict]:
        return [line for line in self.lines if line["message"] == message]


@pytest.fixture
def json_lines():
    root = logging.getLogger()
    previous_level = root.level
    handler = JsonLines()
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    yield handler
    root.removeHandler(handler)
    root.setLevel(previous_level)


class TestEscalationLogLines:
    """What the engine writes while it drives a run."""

    @pytest.mark.asyncio
    async def test_start_is_tagged_with_alert(self, engine, db_session, json_lines):
        policy = await save_policy(db_session)

        run = await engine.start(db_session, "alert-7", policy.id, AlertSeverity.MAJOR)
        await engine.drain()

        [started] = json_lines.find("Escalation run started")
        assert started["alert_id"] == "alert-7"
        assert started["run_id"] == str(run.id)
        assert started["severity"] == "major"
        assert started["ack_timeout_minutes"] == 30
        assert started["service"] == "oncall-test"
        assert started["logger"] == "src.services.escalation_engine"
        assert "correlation_id" not in started

        [executed] = json_lines.find("Escalation step executed")
        assert executed["alert_id"] == "alert-7"
        assert executed["step_number"] == 1

    @pytest.mark.asyncio
    async def test_timer_fired_steps_carry_alert(self, engine, clock, db_session, json_lines):
        policy = await save_policy(db_session)
        await engine.start(db_session, "alert-7", policy.id, AlertSeverity.MAJOR)

        await clock.advance(timedelta(minutes=30))
        await engine.drain()

        steps = json_lines.find("Escalation step executed")
        assert [line["step_number"] for line in steps] == [1, 2]
        assert {line["alert_id"] for line in steps} == {"alert-7"}

    @pytest.mark.asyncio
    async def test_exhaustion_is_a_warning(self, engine, clock, db_session, json_lines):
        policy = await save_policy(db_session)
        await engine.start(db_session, "alert-7", policy.id, AlertSeverity.MAJOR)

        await clock.advance(timedelta(hours=2))
        await engine.drain()

        [exhausted] = json_lines.find("Escalation policy exhausted without acknowledgment")
        assert exhausted["level"] == "WARNING"
        assert exhausted["alert_id"] == "alert-7"

    @pytest.mark.asyncio
    async def test_alert_binding_ends_with_the_operation(self, engine, db_session, json_lines):
        await engine.acknowledge(db_session, "alert-7")

        get_logger("src.services.escalation_engine").info("After acknowledge")

        [line] = json_lines.find("After acknowledge")
        assert "alert_id" not in line


class TestRequestLogLines:
    """Lines logged while serving a request carry its correlation ID."""

    @pytest.mark.asyncio
    async def test_trigger_over_http(self, client, json_lines):
        created = await client.post(
            "/api/escalation-policies",
            json={"name": "p", "steps": [{"step_number": 1, "channels": ["ops"]}]},
        )
        await client.post(
            "/api/escalations/alerts/alert-9/trigger",
            json={"policy_id": created.json()["id"], "severity": "critical"},
            headers={CORRELATION_ID_HEADER: "req-abc"},
        )

        [started] = json_lines.find("Escalation run started")
        assert started["correlation_id"] == "req-abc"
        assert started["alert_id"] == "alert-9"

        completed = [
            line
            for line in json_lines.find("Request completed")
            if line.get("correlation_id") == "req-abc"
        ]
        assert completed[0]["path"] == "/api/escalations/alerts/alert-9/trigger"
        assert completed[0]["status_code"] == 201
        assert "alert_id" not in completed[0]


class TestFormatters:
    def _record(self, level=logging.INFO, **fields):
        record = logging.LogRecord(
            name="src.services.handoff_notifier",
            level=level,
            pathname="handoff_notifier.py",
            lineno=12,
            msg="Handoff notification sent",
            args=(),
            exc_info=None,
        )
        if fields:
            record.extra_fields = fields
        return record

    def test_text_line_layout(self):
        record = self._record(rotation_id="r-1")

        token = correlation_id_ctx.set("req-1")
        try:
            with bind_alert_id("alert-3"):
                line = TextFormatter(service_name="svc").format(record)
        finally:
            correlation_id_ctx.reset(token)

        assert " - svc - INFO - [req-1] - Handoff notification sent" in line
        assert line.endswith("alert_id=alert-3 rotation_id=r-1")

    def test_text_line_without_context(self):
        line = TextFormatter().format(self._record())

        assert "[-] - Handoff notification sent" in line

    def test_errors_report_location(self):
        parsed = json.loads(JsonFormatter().format(self._record(level=logging.ERROR)))

        assert parsed["location"]["file"] == "handoff_notifier.py"
        assert parsed["location"]["line"] == 12

    def test_non_json_fields_are_stringified(self):
        parsed = json.loads(JsonFormatter().format(self._record(due_at=timedelta(minutes=5))))

        assert parsed["due_at"] == "0:05:00"

    def test_exception_traceback(self, json_lines):
        try:
            raise RuntimeError("webhook down")
        except RuntimeError:
            get_logger("src.services.escalation_engine").exception(
                "Escalation timer failed", alert_id="alert-3"
            )

        [line] = json_lines.find("Escalation timer failed")
        assert "RuntimeError: webhook down" in line["exception"]
        assert line["alert_id"] == "alert-3"


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_handler_with_service_name(self):
        setup_logging(log_format="json", log_level="debug", service_name="oncall-x")

        root = logging.getLogger()
        [handler] = root.handlers
        assert root.level == logging.DEBUG
        assert isinstance(handler.formatter, JsonFormatter)
        assert handler.formatter.service_name == "oncall-x"

    def test_text_handler(self):
        setup_logging(log_format="text")

        [handler] = logging.getLogger().handlers
        assert isinstance(handler.formatter, TextFormatter)

    def test_noisy_libraries_are_quieted(self):
        setup_logging()

        assert logging.getLogger("apscheduler").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
