"""
Tests for structured logging helpers.
"""
import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

from core.logging import JSONFormatter, TextFormatter, log_event


def _record(extra=None):
    record = logging.LogRecord("services.plan_proposals", logging.INFO, __file__, 10, "proposal_applied", None, None)
    if extra is not None:
        record.extra_fields = extra
    return record


def test_json_formatter_merges_event_fields():
    pid = uuid4()
    line = JSONFormatter().format(
        _record({"event": "proposal_applied", "proposal_id": pid, "week_indices": {1}})
    )
    data = json.loads(line)
    assert data["message"] == "proposal_applied"
    assert data["service"] == "plan-adaptation-api"
    assert data["proposal_id"] == str(pid)
    assert data["week_indices"] == [1]
    assert data["level"] == "INFO"


def test_text_formatter_appends_fields():
    line = TextFormatter().format(_record({"event": "proposal_applied", "status": "APPLIED"}))
    assert line.endswith("proposal_applied [status=APPLIED]")


def test_text_formatter_without_fields():
    assert TextFormatter().format(_record()).endswith("proposal_applied")


def test_log_event_normalizes_values(caplog):
    logger = logging.getLogger("tests.events")
    at = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
    with caplog.at_level(logging.INFO, logger="tests.events"):
        log_event(logger, "adaptation_trigger_created", trigger_type="SORENESS", at=at)

    record = caplog.records[-1]
    assert record.getMessage() == "adaptation_trigger_created"
    assert record.extra_fields == {
        "event": "adaptation_trigger_created",
        "trigger_type": "SORENESS",
        "at": "2026-03-02T09:30:00+00:00",
    }
