"""Completion request/response records, provider error taxonomy, and the collaborator protocol."""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, ClassVar, Protocol, TypeAlias, cast, runtime_checkable

from incident_diagnosis.constants import DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS

if TYPE_CHECKING:
    from incident_diagnosis.domain.models import AnalysisContext, DiagnosisResult, Solution


def _require_text(value: object, label: str, *, strip: bool = True) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{label} must be a string")
    text = value.strip() if strip else value
    if not text:
        raise ValueError(f"{label} cannot be empty")
    return text


# ---------------------------------------------------------------------------
# Request / response records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProviderUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int | None = None

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if value is not None and value < 0:
                raise ValueError(f"{item.name} must be >= 0")

    def to_dict(self) -> dict[str, int]:
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if getattr(self, item.name) is not None
        }


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    """One prompt in, one text answer out; the collaborator never sends multi-turn chats."""

    prompt: str
    max_output_tokens: int | None = None
    temperature: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "prompt", _require_text(self.prompt, "CompletionRequest.prompt", strip=False)
        )
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            raise ValueError("CompletionRequest.max_output_tokens must be > 0")
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ValueError("CompletionRequest.temperature must be within [0, 2]")


@dataclass(frozen=True, slots=True)
class Completion:
    model: str
    text: str
    usage: ProviderUsage = ProviderUsage()
    request_id: str | None = None
    finish_reason: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "model", _require_text(self.model, "Completion.model"))
        if not isinstance(self.text, str):
            raise TypeError("Completion.text must be a string")
        if not isinstance(self.usage, ProviderUsage):
            raise TypeError("Completion.usage must be ProviderUsage")


@runtime_checkable
class CompletionProvider(Protocol):
    """What the collaborator needs from an SDK adapter."""

    provider_name: str
    model: str

    async def send(self, request: CompletionRequest) -> Completion: ...


ProviderFactory: TypeAlias = Callable[[], CompletionProvider]


@dataclass(frozen=True, slots=True)
class AnalysisReport:
    """Outcome of one ``analyze`` call: the result plus model attribution."""

    result: DiagnosisResult
    model: str
    tokens_used: int = 0


@runtime_checkable
class AnalysisCollaborator(Protocol):
    """External analysis service driven by the orchestrator.

    Errors are raised as :class:`ProviderError` subclasses and are never
    retried by the caller.
    """

    async def test_connection(self) -> bool: ...

    async def analyze(self, context: AnalysisContext) -> AnalysisReport: ...

    async def suggest_solutions(self, result: DiagnosisResult) -> list[Solution]: ...

    async def explain_code(self, code: str, language: str) -> str: ...


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class ProviderError(RuntimeError):
    """Normalized provider failure.

    ``str(error)`` is a stable ``key=value`` line so failures can be grepped
    out of logs regardless of which SDK raised them.
    """

    code: ClassVar[str] = "error"
    retryable_by_default: ClassVar[bool] = False
    default_http_status: ClassVar[int | None] = None

    def __init__(
        self,
        detail: object,
        *,
        provider: str = "provider",
        retryable: bool | None = None,
        http_status: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        self.provider = _require_text(provider, "provider")
        self.detail = _collapse_whitespace(detail) or "unknown error"
        self.retryable = self.retryable_by_default if retryable is None else bool(retryable)
        self.http_status = http_status if http_status is not None else self.default_http_status
        self.provider_code = (
            None if provider_code is None else _require_text(provider_code, "provider_code")
        )
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [
            f"provider={self.provider}",
            f"code={self.code}",
            f"retryable={'true' if self.retryable else 'false'}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        if self.provider_code is not None:
            parts.append(f"provider_code={self.provider_code}")
        parts.append(f"detail={self.detail}")
        return " ".join(parts)


class ProviderUnavailableError(ProviderError):
    """SDK not installed or provider name not registered."""

    code = "unavailable"


class ProviderAuthenticationError(ProviderError):
    code = "auth"


class ProviderInvalidRequestError(ProviderError):
    code = "invalid_request"


class ProviderContextLengthError(ProviderError):
    """Request exceeds the model's context window."""

    code = "context_length"


class ProviderModelUnavailableError(ProviderError):
    """Configured model is unknown, retired, or temporarily overloaded."""

    code = "model_unavailable"


class ProviderRateLimitError(ProviderError):
    """Provider rate-limit responses; carries how long the caller should wait."""

    code = "rate_limit"
    retryable_by_default = True
    default_http_status = 429

    def __init__(
        self,
        detail: object,
        *,
        provider: str = "provider",
        http_status: int | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(detail, provider=provider, http_status=http_status)
        if retry_after_seconds is None or not math.isfinite(retry_after_seconds) or retry_after_seconds < 0:
            retry_after_seconds = DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS
        self.retry_after_seconds = float(retry_after_seconds)


class ProviderTimeoutError(ProviderError):
    code = "timeout"
    retryable_by_default = True


class ProviderServiceError(ProviderError):
    """Upstream API failure with no more specific classification."""

    code = "service"
    retryable_by_default = True


class ProviderResponseError(ProviderError):
    """The call succeeded but the payload could not be normalized."""

    code = "response_invalid"


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def map_provider_exception(exc: BaseException, *, provider: str) -> ProviderError:
    """Classify an SDK exception into the normalized taxonomy.

    Classification uses the HTTP status when the SDK exposes one and falls back
    to the exception class name, so it works without importing either SDK.
    """

    if isinstance(exc, ProviderError):
        return exc

    status = read_status_code(exc)
    detail = exception_detail(exc)
    error_type = _classify(exc, status, exc.__class__.__name__.lower(), detail.lower())
    if error_type is ProviderRateLimitError:
        return ProviderRateLimitError(
            detail,
            provider=provider,
            http_status=status,
            retry_after_seconds=read_retry_after(exc),
        )
    return error_type(detail, provider=provider, http_status=status)


def _classify(
    exc: BaseException,
    status: int | None,
    class_name: str,
    detail: str,
) -> type[ProviderError]:
    if status in (401, 403) or "auth" in class_name or "permission" in class_name:
        return ProviderAuthenticationError
    if status == 429 or "ratelimit" in class_name:
        return ProviderRateLimitError
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or "timeout" in class_name:
        return ProviderTimeoutError

    mentions_context = "context" in detail and "length" in detail
    if "contextlength" in class_name or (status in (400, 413, 422) and mentions_context):
        return ProviderContextLengthError
    if (status == 404 or "notfound" in class_name) and "model" in detail:
        return ProviderModelUnavailableError
    if status == 529 or "overloaded" in class_name:
        return ProviderModelUnavailableError
    if status in (400, 404, 409, 422) or "badrequest" in class_name or "invalidrequest" in class_name:
        return ProviderInvalidRequestError
    return ProviderServiceError


class ProviderRegistry:
    """Case-insensitive name -> adapter factory map; adapters are built lazily."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    @staticmethod
    def _key(name: str) -> str:
        return _require_text(name, "name").lower()

    def register(self, name: str, factory: ProviderFactory, *, overwrite: bool = False) -> None:
        key = self._key(name)
        if key in self._factories and not overwrite:
            raise ValueError(f"provider already registered: {key}")
        self._factories[key] = factory

    def unregister(self, name: str) -> None:
        self._factories.pop(self._key(name), None)

    def is_registered(self, name: str) -> bool:
        return self._key(name) in self._factories

    def list(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def get(self, name: str) -> CompletionProvider:
        key = self._key(name)
        try:
            factory = self._factories[key]
        except KeyError:
            raise ProviderUnavailableError("provider is not registered", provider=key) from None
        adapter = factory()
        if not isinstance(adapter, CompletionProvider):
            raise TypeError(f"provider factory returned invalid adapter for {key}")
        return adapter


# ---------------------------------------------------------------------------
# Duck-typed readers for SDK response objects and exceptions
# ---------------------------------------------------------------------------


def _collapse_whitespace(value: object) -> str:
    return " ".join(str(value).split())


def exception_detail(exc: BaseException) -> str:
    return _collapse_whitespace(exc) or exc.__class__.__name__


def _as_plain_int(value: object) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        status = _as_plain_int(getattr(exc, key, None))
        if status is not None:
            return status
    return _as_plain_int(getattr(getattr(exc, "response", None), "status_code", None))


def read_retry_after(exc: BaseException) -> float | None:
    """Seconds from a ``retry_after`` attribute or a ``retry-after`` response header."""

    raw = getattr(exc, "retry_after", None)
    if raw is None or isinstance(raw, bool):
        headers = getattr(getattr(exc, "response", None), "headers", None)
        raw = headers.get("retry-after") if hasattr(headers, "get") else None
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def read_value(value: object, key: str, *, default: object | None = None) -> object | None:
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key, default))
    return cast("object | None", getattr(value, key, default))


def read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def read_str(value: object, key: str) -> str | None:
    candidate = read_value(value, key)
    return candidate if isinstance(candidate, str) and candidate.strip() else None


def read_int(value: object, key: str) -> int | None:
    return _as_plain_int(read_value(value, key))


__all__ = [
    "AnalysisCollaborator",
    "AnalysisReport",
    "Completion",
    "CompletionProvider",
    "CompletionRequest",
    "ProviderAuthenticationError",
    "ProviderContextLengthError",
    "ProviderError",
    "ProviderFactory",
    "ProviderInvalidRequestError",
    "ProviderModelUnavailableError",
    "ProviderRateLimitError",
    "ProviderRegistry",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderUsage",
    "exception_detail",
    "is_retryable_error",
    "map_provider_exception",
    "read_int",
    "read_retry_after",
    "read_sequence",
    "read_status_code",
    "read_str",
    "read_value",
]
