"""Shared plumbing for adapters that wrap an optional vendor SDK.

Subclasses name the SDK module, its async client class, and the endpoint
attribute that exposes ``create``; they only shape the request payload and
pull text and usage out of the response.
"""

from __future__ import annotations

import importlib
import logging
import os
import time
from typing import ClassVar, Protocol

from incident_diagnosis.constants import DEFAULT_MAX_OUTPUT_TOKENS
from incident_diagnosis.providers.base import (
    Completion,
    CompletionRequest,
    ProviderAuthenticationError,
    ProviderError,
    ProviderResponseError,
    ProviderUnavailableError,
    ProviderUsage,
    map_provider_exception,
    read_int,
    read_str,
    read_value,
)

logger = logging.getLogger(__name__)


class _Endpoint(Protocol):
    async def create(self, **kwargs: object) -> object: ...


def _optional_text(value: str | None, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


class SdkCompletionProvider:
    provider_name: ClassVar[str]
    sdk_module: ClassVar[str]
    client_class: ClassVar[str]
    endpoint_attr: ClassVar[str]
    api_key_fallback_env: ClassVar[str]
    display_name: ClassVar[str]

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        client: object | None = None,
    ) -> None:
        resolved_model = _optional_text(model, "model")
        if resolved_model is None:
            raise ValueError("model must be a non-empty string")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")

        self.model = resolved_model
        self._api_key = _optional_text(api_key, "api_key")
        self._api_key_env = _optional_text(api_key_env, "api_key_env")
        self._base_url = _optional_text(base_url, "base_url")
        self._timeout_seconds = timeout_seconds
        self._max_output_tokens = max_output_tokens
        self._client = client

    async def send(self, request: CompletionRequest) -> Completion:
        payload = self.build_payload(request)
        started = time.perf_counter()
        try:
            raw_response = await self._endpoint().create(**payload)
        except ProviderError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalized into the provider taxonomy.
            mapped = map_provider_exception(exc, provider=self.provider_name)
            logger.debug("%s request failed: %s", self.provider_name, mapped.code)
            raise mapped from exc
        latency_ms = int((time.perf_counter() - started) * 1000)

        text = self.extract_text(raw_response)
        if not text:
            raise ProviderResponseError(
                "response does not contain text content", provider=self.provider_name
            )
        return Completion(
            model=read_str(raw_response, "model") or self.model,
            text=text,
            usage=self.extract_usage(raw_response, latency_ms=latency_ms),
            request_id=read_str(raw_response, "id"),
            finish_reason=self.extract_finish_reason(raw_response),
        )

    # -- hooks ---------------------------------------------------------------

    def build_payload(self, request: CompletionRequest) -> dict[str, object]:
        raise NotImplementedError

    def extract_text(self, raw_response: object) -> str:
        raise NotImplementedError

    def extract_finish_reason(self, raw_response: object) -> str | None:
        return None

    def extract_usage(self, raw_response: object, *, latency_ms: int | None = None) -> ProviderUsage:
        usage = read_value(raw_response, "usage")
        if usage is None:
            return ProviderUsage(latency_ms=latency_ms)
        input_tokens = _first_int(usage, "input_tokens", "prompt_tokens")
        output_tokens = _first_int(usage, "output_tokens", "completion_tokens")
        total_tokens = read_int(usage, "total_tokens")
        return ProviderUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens if total_tokens is None else total_tokens,
            latency_ms=latency_ms,
        )

    def client_kwargs(self) -> dict[str, object]:
        kwargs: dict[str, object] = {"api_key": self._resolve_api_key()}
        if self._base_url is not None:
            kwargs["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            kwargs["timeout"] = self._timeout_seconds
        return kwargs

    # -- client construction -------------------------------------------------

    def _output_budget(self, request: CompletionRequest) -> int:
        return request.max_output_tokens or self._max_output_tokens

    def _endpoint(self) -> _Endpoint:
        if self._client is None:
            self._client = self._build_client()
        return getattr(self._client, self.endpoint_attr)  # type: ignore[no-any-return]

    def _build_client(self) -> object:
        try:
            module = importlib.import_module(self.sdk_module)
        except ImportError as exc:
            raise ProviderUnavailableError(
                f"{self.sdk_module} SDK is not installed", provider=self.provider_name
            ) from exc

        factory = getattr(module, self.client_class, None)
        if factory is None:
            raise ProviderUnavailableError(
                f"{self.sdk_module} SDK does not expose {self.client_class}",
                provider=self.provider_name,
            )
        client = factory(**self.client_kwargs())
        if not hasattr(client, self.endpoint_attr):
            raise ProviderUnavailableError(
                f"{self.sdk_module} client missing {self.endpoint_attr} API",
                provider=self.provider_name,
            )
        return client

    def _resolve_api_key(self) -> str:
        if self._api_key is not None:
            return self._api_key
        env_name = self._api_key_env or self.api_key_fallback_env
        value = os.getenv(env_name, "")
        if not value.strip():
            raise ProviderAuthenticationError(
                f"missing {self.display_name} API key; set {env_name}",
                provider=self.provider_name,
                http_status=401,
            )
        return value


def _first_int(payload: object, *keys: str) -> int:
    for key in keys:
        value = read_int(payload, key)
        if value is not None:
            return value
    return 0


__all__ = ["SdkCompletionProvider"]
