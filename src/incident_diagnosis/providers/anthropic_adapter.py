"""Anthropic Messages API adapter."""

from __future__ import annotations

from incident_diagnosis.providers.base import CompletionRequest, read_sequence, read_str
from incident_diagnosis.providers.sdk import SdkCompletionProvider

DEFAULT_ANTHROPIC_MODEL = "claude-3-5-sonnet-latest"


class AnthropicProvider(SdkCompletionProvider):
    """``messages.create`` with a single user turn; text blocks are joined by newlines."""

    provider_name = "anthropic"
    sdk_module = "anthropic"
    client_class = "AsyncAnthropic"
    endpoint_attr = "messages"
    api_key_fallback_env = "ANTHROPIC_API_KEY"
    display_name = "Anthropic"

    def __init__(self, *, model: str = DEFAULT_ANTHROPIC_MODEL, **kwargs: object) -> None:
        super().__init__(model=model, **kwargs)  # type: ignore[arg-type]

    def build_payload(self, request: CompletionRequest) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "max_tokens": self._output_budget(request),
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    def extract_text(self, raw_response: object) -> str:
        blocks = [
            read_str(block, "text") or ""
            for block in read_sequence(raw_response, "content")
            if (read_str(block, "type") or "").lower() == "text"
        ]
        return "\n".join(block for block in blocks if block.strip())

    def extract_finish_reason(self, raw_response: object) -> str | None:
        return read_str(raw_response, "stop_reason")


__all__ = ["AnthropicProvider", "DEFAULT_ANTHROPIC_MODEL"]
