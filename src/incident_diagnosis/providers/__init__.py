"""Analysis collaborator protocol, provider adapters, and the provider error taxonomy."""

from incident_diagnosis.providers.anthropic_adapter import AnthropicProvider
from incident_diagnosis.providers.base import (
    AnalysisCollaborator,
    AnalysisReport,
    Completion,
    CompletionProvider,
    CompletionRequest,
    ProviderAuthenticationError,
    ProviderContextLengthError,
    ProviderError,
    ProviderInvalidRequestError,
    ProviderModelUnavailableError,
    ProviderRateLimitError,
    ProviderRegistry,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderUsage,
    is_retryable_error,
    map_provider_exception,
)
from incident_diagnosis.providers.collaborator import ModelAnalysisCollaborator
from incident_diagnosis.providers.factory import create_collaborator, create_provider_registry
from incident_diagnosis.providers.openai_adapter import OpenAIProvider
from incident_diagnosis.providers.sdk import SdkCompletionProvider

__all__ = [
    "AnalysisCollaborator",
    "AnalysisReport",
    "AnthropicProvider",
    "Completion",
    "CompletionProvider",
    "CompletionRequest",
    "ModelAnalysisCollaborator",
    "OpenAIProvider",
    "ProviderAuthenticationError",
    "ProviderContextLengthError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderModelUnavailableError",
    "ProviderRateLimitError",
    "ProviderRegistry",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderUsage",
    "SdkCompletionProvider",
    "create_collaborator",
    "create_provider_registry",
    "is_retryable_error",
    "map_provider_exception",
]
