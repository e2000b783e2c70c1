"""
incident-diagnosis: unit tests for structured logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate JSON-lines output, correlation fields, and secret redaction.

What this test file should cover
- setup_logging honours the [observability] section and overrides.
- Correlation scope fields land on every record and unwind afterwards.
- Sensitive keys, provider keys, and prompt bodies are redacted; token counts are not.
- Level filtering, handle shutdown, and argument validation.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from incident_diagnosis.observability.logging import (
    REDACTED,
    LoggingConfig,
    LoggingHandle,
    configure_logging,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    is_sensitive_key,
    parse_log_level,
    redact_text,
    reset_correlation_fields,
    set_correlation_fields,
    setup_logging,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _read_records(handle: LoggingHandle) -> list[dict[str, object]]:
    handle.flush()
    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def test_setup_logging_writes_json_lines_under_run_dir(tmp_path: Path) -> None:
    handle = setup_logging({"log_level": "INFO", "log_dir": str(tmp_path)}, run_id="run-1")

    logging.getLogger("incident_diagnosis.tests").info("diagnosis stage %s", "initializing")
    records = _read_records(handle)

    assert handle.log_path == tmp_path / "run-1" / "diagnosis.jsonl"
    assert get_active_logging_handle() is handle
    (record,) = records
    assert record["message"] == "diagnosis stage initializing"
    assert record["level"] == "INFO"
    assert record["logger"] == "incident_diagnosis.tests"
    assert record["run_id"] == "run-1"
    assert str(record["timestamp"]).endswith("Z")


def test_log_dir_argument_overrides_section(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_dir": str(tmp_path / "ignored")}, run_id="run-2", log_dir=tmp_path / "chosen"
    )

    assert handle.log_path.parent == tmp_path / "chosen" / "run-2"


def test_correlation_scope_tags_records(tmp_path: Path) -> None:
    handle = setup_logging({"log_dir": str(tmp_path)}, run_id="run-3")
    logger = logging.getLogger("incident_diagnosis.orchestration")

    with correlation_scope(session_id="diag-1", issue_id="issue-9"):
        logger.info("inside")
        assert get_correlation_context() == {"session_id": "diag-1", "issue_id": "issue-9"}
    logger.info("outside")

    inside, outside = _read_records(handle)
    assert inside["session_id"] == "diag-1"
    assert inside["issue_id"] == "issue-9"
    assert "session_id" not in outside
    assert get_correlation_context() == {}


def test_set_correlation_fields_can_unbind() -> None:
    outer = set_correlation_fields(session_id="diag-1", provider="anthropic")
    inner = set_correlation_fields(provider=None)

    assert get_correlation_context() == {"session_id": "diag-1"}

    reset_correlation_fields(inner)
    reset_correlation_fields(outer)
    assert get_correlation_context() == {}


def test_extra_fields_are_redacted_but_usage_is_kept(tmp_path: Path) -> None:
    handle = setup_logging({"log_dir": str(tmp_path)}, run_id="run-4")

    logging.getLogger("incident_diagnosis.providers").info(
        "sent request with api_key=abc123",
        extra={
            "api_key": "plain-secret",
            "tokens_used": 321,
            "request_text": "entire prompt body",
            "headers": {"Authorization": "Bearer abc.def"},
        },
    )
    (record,) = _read_records(handle)

    assert record["message"] == f"sent request with api_key={REDACTED}"
    fields = record["fields"]
    assert isinstance(fields, dict)
    assert fields["api_key"] == REDACTED
    assert fields["tokens_used"] == 321
    assert fields["request_text"] == REDACTED
    assert fields["headers"] == {"Authorization": REDACTED}


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    handle = setup_logging({"log_dir": str(tmp_path), "redact_secrets": False}, run_id="run-5")

    logging.getLogger("incident_diagnosis").info("password=hunter2")
    (record,) = _read_records(handle)

    assert record["message"] == "password=hunter2"


def test_level_filtering(tmp_path: Path) -> None:
    handle = setup_logging({"log_dir": str(tmp_path), "log_level": "WARNING"}, run_id="run-6")
    logger = logging.getLogger("incident_diagnosis.tests")

    logger.info("hidden")
    logger.warning("shown")

    assert [record["message"] for record in _read_records(handle)] == ["shown"]


def test_shutdown_is_idempotent(tmp_path: Path) -> None:
    handle = setup_logging({"log_dir": str(tmp_path)}, run_id="run-7")

    shutdown_logging()
    shutdown_logging()
    handle.shutdown()

    assert handle.closed
    assert get_active_logging_handle() is None


def test_reconfiguring_replaces_active_handle(tmp_path: Path) -> None:
    first = setup_logging({"log_dir": str(tmp_path)}, run_id="run-a")
    second = setup_logging({"log_dir": str(tmp_path)}, run_id="run-b")

    assert first.closed
    assert get_active_logging_handle() is second
    assert len(logging.getLogger("incident_diagnosis").handlers) == 1


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"run_id": " "}, "run_id"),
        ({"run_id": "r", "log_filename": "nested/file.jsonl"}, "path separators"),
        ({"run_id": "r", "queue_size": 0}, "queue_size"),
        ({"run_id": "r", "level": "LOUD"}, "unsupported log level"),
    ],
)
def test_configure_logging_validates(tmp_path: Path, kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        configure_logging(LoggingConfig(base_log_dir=tmp_path, **kwargs))  # type: ignore[arg-type]


def test_parse_log_level() -> None:
    assert parse_log_level(" debug ") == logging.DEBUG
    assert parse_log_level(logging.ERROR) == logging.ERROR
    with pytest.raises(ValueError):
        parse_log_level(True)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Authorization: Bearer abc.def-123", f"Authorization: Bearer {REDACTED}"),
        ("password = hunter2; retry", f"password = {REDACTED}; retry"),
        ("calling with Bearer abc.def-123", f"calling with Bearer {REDACTED}"),
        ("key sk-ant-0123456789abcdef leaked", f"key {REDACTED} leaked"),
        ("key sk-0123456789abcdef leaked", f"key {REDACTED} leaked"),
        ("token_budget=3000 fragments=4", "token_budget=3000 fragments=4"),
    ],
)
def test_redact_text(text: str, expected: str) -> None:
    assert redact_text(text) == expected


def test_sensitive_keys() -> None:
    assert is_sensitive_key("OPENAI_API_KEY")
    assert is_sensitive_key("raw_response")
    assert not is_sensitive_key("max_output_tokens")
    assert default_log_redactor({"nested": [{"password": "x"}, "ok"]}) == {
        "nested": [{"password": REDACTED}, "ok"]
    }
