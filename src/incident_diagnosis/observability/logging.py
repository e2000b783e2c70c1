"""JSON-lines logging for diagnosis runs with correlation fields and secret redaction.

Records are handed to a bounded queue by a non-blocking ``QueueHandler`` and
written by a ``QueueListener`` thread, so a slow sink never stalls a diagnosis
stage. Each record carries the correlation fields bound through
:func:`correlation_scope` (``session_id``, ``issue_id`` ...), and ``extra=`` data
is emitted under ``fields`` after deep redaction.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, cast

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
DEFAULT_LOGGER_NAME: Final[str] = "incident_diagnosis"
_DEFAULT_LOG_FILENAME: Final[str] = "diagnosis.jsonl"
_DEFAULT_QUEUE_SIZE: Final[int] = 4096

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "session_id",
    "issue_id",
    "project_id",
    "event_id",
    "provider",
)

# "token" alone is not sensitive here: token budgets and usage are logged freely.
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "access_token",
    "auth_token",
    "refresh_token",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_PROMPT_KEY_TERMS: Final[tuple[str, ...]] = (
    "request_text",
    "prompt_text",
    "raw_response",
)

_KEY_ASSIGNMENT: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
    r"(\s*[:=]\s*)(?!bearer\b)([^\s,;]+)"
)
_BEARER_TOKEN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_ANTHROPIC_KEY: Final[re.Pattern[str]] = re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,}\b")
_OPENAI_KEY: Final[re.Pattern[str]] = re.compile(r"\bsk-[A-Za-z0-9_-]{12,}\b")

_RESERVED_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "taskName", "correlation"}

_Pairs = tuple[tuple[str, str], ...]
_CORRELATION: contextvars.ContextVar[_Pairs] = contextvars.ContextVar(
    "incident_diagnosis_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one structured logging installation."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = _DEFAULT_QUEUE_SIZE
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    log_to_stdout: bool | None = None,
) -> LoggingHandle:
    """Install logging from an ``[observability]`` config section.

    ``log_dir`` and ``log_to_stdout`` override the section when given. Turning
    ``redact_secrets`` off swaps in an identity redactor.
    """

    section = dict(observability_config or {})
    raw_level = section.get("log_level", "INFO")
    raw_dir: object = log_dir if log_dir is not None else section.get("log_dir", "logs")
    raw_stdout = log_to_stdout if log_to_stdout is not None else section.get("log_to_stdout", False)
    redact = bool(section.get("redact_secrets", True))

    return configure_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=raw_dir if isinstance(raw_dir, (Path, str)) else "logs",
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_to_stdout=bool(raw_stdout),
            redactor=None if redact else _identity,
        )
    )


class _ContextQueueHandler(logging.handlers.QueueHandler):
    """Stamps correlation fields onto records and never blocks on a full queue."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._drop_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._drop_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see the caller's context variables.
        bound = get_correlation_context()
        explicit = getattr(record, "correlation", None)
        if isinstance(explicit, Mapping):
            bound.update(_clean_pairs(explicit))
        if bound:
            record.correlation = bound
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._drop_lock:
                self._dropped += 1


class JsonLineFormatter(logging.Formatter):
    """One sorted-key JSON object per record; ``extra=`` data lands under ``fields``."""

    def __init__(self, *, redactor: LogRedactor, base_context: Mapping[str, str]) -> None:
        super().__init__()
        self._redactor = redactor
        self._base_context = dict(base_context)

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, JSONValue] = dict(_record_correlation(record, self._base_context))
        payload.update(
            timestamp=_iso_timestamp(record.created),
            level=record.levelname,
            logger=record.name,
            message=_as_text(self._redactor(record.getMessage())),
        )
        extras = {
            key: _to_json_value(value)
            for key, value in vars(record).items()
            if not (key in _RESERVED_RECORD_ATTRS or key in CORRELATION_KEYS or key[:1] == "_")
        }
        if extras:
            payload["fields"] = self._redactor(cast("JSONValue", extras))
        if record.exc_info is not None:
            payload["exception"] = _as_text(self._redactor(self.formatException(record.exc_info)))
        return _compact_json(payload)


class LoggingHandle:
    """A running installation: the bounded queue, its listener thread and the sinks."""

    def __init__(
        self,
        logger: logging.Logger,
        *,
        run_id: str,
        log_path: Path,
        sinks: Sequence[logging.Handler],
        level: int,
        queue_size: int,
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._sinks = tuple(sinks)
        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_size)
        self._handler = _ContextQueueHandler(self._queue)
        self._handler.setLevel(level)
        self._listener = logging.handlers.QueueListener(
            self._queue, *self._sinks, respect_handler_level=True
        )
        self._lock = threading.Lock()
        self._closed = False

        self._listener.start()
        logger.addHandler(self._handler)

    @property
    def dropped_records(self) -> int:
        return self._handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait (bounded) for queued records to reach the sinks, then flush them."""

        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.flush(timeout_seconds=timeout_seconds)
        self._listener.stop()
        self.logger.removeHandler(self._handler)
        self._handler.close()
        for sink in self._sinks:
            sink.flush()
            sink.close()


class _Installation:
    """The process-wide active handle; shut down at interpreter exit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: LoggingHandle | None = None
        self._exit_hook = False

    def current(self) -> LoggingHandle | None:
        with self._lock:
            return self._handle

    def install(self, handle: LoggingHandle) -> None:
        with self._lock:
            self._handle = handle
            if not self._exit_hook:
                atexit.register(shutdown_logging)
                self._exit_hook = True

    def release(self, handle: LoggingHandle | None) -> LoggingHandle | None:
        with self._lock:
            target = self._handle if handle is None else handle
            if target is self._handle:
                self._handle = None
            return target


_INSTALLATION = _Installation()


def configure_logging(config: LoggingConfig) -> LoggingHandle:
    """Install queue-backed JSON-lines logging at ``<base_log_dir>/<run_id>/<log_filename>``.

    Any previously installed handle is shut down first.
    """

    shutdown_logging()

    run_id = _non_empty(config.run_id, "run_id")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    queue_size = config.queue_size
    if isinstance(queue_size, bool) or not isinstance(queue_size, int) or queue_size <= 0:
        raise ValueError(f"queue_size must be a positive integer, got {queue_size!r}")
    level = parse_log_level(config.level)
    logger = logging.getLogger(_non_empty(config.logger_name, "logger_name"))

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = JsonLineFormatter(
        redactor=config.redactor or default_log_redactor, base_context={"run_id": run_id}
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger.setLevel(level)
    logger.propagate = False
    for stale in logger.handlers[:]:
        logger.removeHandler(stale)
        stale.close()

    handle = LoggingHandle(
        logger, run_id=run_id, log_path=log_path, sinks=sinks, level=level, queue_size=queue_size
    )
    _INSTALLATION.install(handle)
    return handle


def shutdown_logging(handle: LoggingHandle | None = None, *, timeout_seconds: float = 2.0) -> None:
    """Stop ``handle``, or the active one; a no-op when nothing is installed."""

    target = _INSTALLATION.release(handle)
    if target is not None:
        target.shutdown(timeout_seconds=timeout_seconds)


def get_active_logging_handle() -> LoggingHandle | None:
    return _INSTALLATION.current()


def parse_log_level(value: int | str) -> int:
    """``"debug"``, ``" WARNING "`` or a numeric level."""

    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        raise ValueError(f"log level must be int or str, got {type(value).__name__}")
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unsupported log level {value!r}")
    return level


# ---------------------------------------------------------------------------
# Correlation context
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


def set_correlation_fields(**fields: str | None) -> contextvars.Token[_Pairs]:
    """Bind fields for the current context; a ``None`` value unbinds that key.

    Returns the token for :func:`reset_correlation_fields`.
    """

    bound = get_correlation_context()
    for key, value in fields.items():
        name = _non_empty(key, "correlation key")
        if value is None:
            bound.pop(name, None)
            continue
        bound[name] = _non_empty(value, f"correlation value for {name}")
    return _CORRELATION.set(tuple(bound.items()))


def reset_correlation_fields(token: contextvars.Token[_Pairs]) -> None:
    _CORRELATION.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask credential-looking keys and values, and prompt bodies, at any depth."""
    return _redact(value, key=None)


def redact_text(text: str) -> str:
    redacted = _BEARER_TOKEN.sub(f"Bearer {REDACTED}", text)
    redacted = _KEY_ASSIGNMENT.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{REDACTED}", redacted
    )
    redacted = _ANTHROPIC_KEY.sub(REDACTED, redacted)
    return _OPENAI_KEY.sub(REDACTED, redacted)


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS) or any(
        term in lowered for term in _PROMPT_KEY_TERMS
    )


def _redact(value: JSONValue, *, key: str | None) -> JSONValue:
    if key is not None and is_sensitive_key(key):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [_redact(item, key=None) for item in value]
    if isinstance(value, dict):
        return {name: _redact(item, key=name) for name, item in value.items()}
    return value


def _identity(value: JSONValue) -> JSONValue:
    return value




# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record_correlation(record: logging.LogRecord, base: Mapping[str, str]) -> dict[str, str]:
    """Base context, then ambient context, then per-record attributes; later wins."""

    merged = {**base, **get_correlation_context()}
    merged.update(
        _clean_pairs({key: getattr(record, key, None) for key in CORRELATION_KEYS})
    )
    bound = getattr(record, "correlation", None)
    if isinstance(bound, Mapping):
        merged.update(_clean_pairs(bound))
    return merged


def _clean_pairs(mapping: Mapping[object, object]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key, value in mapping.items():
        if isinstance(key, str) and isinstance(value, str) and key.strip() and value.strip():
            cleaned[key.strip()] = value.strip()
    return cleaned


def _to_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        moment = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
        return moment.isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json_value(item) for item in value), key=_compact_json)
    member_value = getattr(value, "value", None)
    return member_value if isinstance(member_value, (str, int)) else repr(value)


def _compact_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _as_text(value: JSONValue) -> str:
    return value if isinstance(value, str) else _compact_json(value)


def _iso_timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValueError(f"{name} must not be empty")
    return value.strip()


__all__ = [
    "CORRELATION_KEYS",
    "DEFAULT_LOGGER_NAME",
    "JSONScalar",
    "JSONValue",
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "REDACTED",
    "configure_logging",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "is_sensitive_key",
    "parse_log_level",
    "redact_text",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "shutdown_logging",
]
