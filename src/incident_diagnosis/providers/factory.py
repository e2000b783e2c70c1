"""Build provider adapters and the model-backed collaborator from configuration."""

from __future__ import annotations

from collections.abc import Mapping

from incident_diagnosis.providers.anthropic_adapter import AnthropicProvider
from incident_diagnosis.providers.base import CompletionProvider, ProviderRegistry
from incident_diagnosis.providers.collaborator import ModelAnalysisCollaborator
from incident_diagnosis.providers.openai_adapter import OpenAIProvider

SUPPORTED_PROVIDERS: tuple[str, ...] = ("anthropic", "openai")


def create_provider_registry(
    providers_config: Mapping[str, object],
    *,
    timeout_seconds: float | None = None,
) -> ProviderRegistry:
    """Register a factory per supported provider using its config subsection."""

    registry = ProviderRegistry()
    anthropic_settings = _section(providers_config, "anthropic")
    openai_settings = _section(providers_config, "openai")

    def _anthropic() -> CompletionProvider:
        return AnthropicProvider(
            timeout_seconds=timeout_seconds,
            **_adapter_kwargs(anthropic_settings),  # type: ignore[arg-type]
        )

    def _openai() -> CompletionProvider:
        return OpenAIProvider(
            timeout_seconds=timeout_seconds,
            **_adapter_kwargs(openai_settings),  # type: ignore[arg-type]
        )

    registry.register("anthropic", _anthropic)
    registry.register("openai", _openai)
    return registry


def create_collaborator(
    config: Mapping[str, object],
    *,
    provider_name: str | None = None,
    registry: ProviderRegistry | None = None,
) -> ModelAnalysisCollaborator:
    """Instantiate the configured provider and wrap it in a collaborator."""

    providers_config = _section(config, "providers")
    diagnosis_config = _section(config, "diagnosis")
    timeout = diagnosis_config.get("collaborator_timeout_seconds")
    resolved_registry = registry or create_provider_registry(
        providers_config,
        timeout_seconds=float(timeout) if isinstance(timeout, (int, float)) else None,
    )

    name = provider_name or str(providers_config.get("default", SUPPORTED_PROVIDERS[0]))
    provider = resolved_registry.get(name)
    settings = _section(providers_config, name.lower())
    temperature = settings.get("temperature")
    return ModelAnalysisCollaborator(
        provider,
        temperature=float(temperature) if isinstance(temperature, (int, float)) else None,
    )


def _adapter_kwargs(settings: Mapping[str, object]) -> dict[str, object]:
    kwargs: dict[str, object] = {}
    for key in ("model", "api_key_env", "base_url", "max_output_tokens"):
        value = settings.get(key)
        if value is not None and value != "":
            kwargs[key] = value
    return kwargs


def _section(config: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = config.get(key)
    if isinstance(value, Mapping):
        return value
    return {}


__all__ = ["SUPPORTED_PROVIDERS", "create_collaborator", "create_provider_registry"]
