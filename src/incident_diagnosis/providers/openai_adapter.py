"""OpenAI Responses API adapter."""

from __future__ import annotations

from incident_diagnosis.providers.base import CompletionRequest, read_sequence, read_str
from incident_diagnosis.providers.sdk import SdkCompletionProvider

DEFAULT_OPENAI_MODEL = "gpt-4o"

_TEXT_PART_TYPES = frozenset({"output_text", "text"})


class OpenAIProvider(SdkCompletionProvider):
    """``responses.create``; prefers ``output_text`` and falls back to message parts."""

    provider_name = "openai"
    sdk_module = "openai"
    client_class = "AsyncOpenAI"
    endpoint_attr = "responses"
    api_key_fallback_env = "OPENAI_API_KEY"
    display_name = "OpenAI"

    def __init__(
        self,
        *,
        model: str = DEFAULT_OPENAI_MODEL,
        organization: str | None = None,
        **kwargs: object,
    ) -> None:
        super().__init__(model=model, **kwargs)  # type: ignore[arg-type]
        self._organization = organization.strip() if organization and organization.strip() else None

    def client_kwargs(self) -> dict[str, object]:
        kwargs = super().client_kwargs()
        if self._organization is not None:
            kwargs["organization"] = self._organization
        return kwargs

    def build_payload(self, request: CompletionRequest) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "input": request.prompt,
            "max_output_tokens": self._output_budget(request),
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    def extract_text(self, raw_response: object) -> str:
        direct = read_str(raw_response, "output_text")
        if direct:
            return direct

        parts: list[str] = []
        for item in read_sequence(raw_response, "output"):
            # Reasoning items also carry content; only assistant messages count.
            if (read_str(item, "type") or "").lower() != "message":
                continue
            for part in read_sequence(item, "content"):
                if (read_str(part, "type") or "").lower() in _TEXT_PART_TYPES:
                    parts.append(read_str(part, "text") or read_str(part, "value") or "")
        return "\n".join(part for part in parts if part.strip())

    def extract_finish_reason(self, raw_response: object) -> str | None:
        return read_str(raw_response, "status")


__all__ = ["DEFAULT_OPENAI_MODEL", "OpenAIProvider"]
