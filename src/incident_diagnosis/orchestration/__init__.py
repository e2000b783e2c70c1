"""Session orchestration: stage machine, progress delivery, and the session registry."""

from incident_diagnosis.orchestration.orchestrator import (
    DiagnosisOrchestrator,
    DiagnosisStatistics,
    OrchestratorSettings,
    apply_priority_threshold,
    build_analysis_components,
    validate_inputs,
)
from incident_diagnosis.orchestration.progress import (
    DispatchError,
    ProgressBus,
    ProgressCallback,
    ProgressChannel,
    ProgressEvent,
    ProgressStage,
)
from incident_diagnosis.orchestration.registry import SessionRegistry

__all__ = [
    "DiagnosisOrchestrator",
    "DiagnosisStatistics",
    "DispatchError",
    "OrchestratorSettings",
    "ProgressBus",
    "ProgressCallback",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressStage",
    "SessionRegistry",
    "apply_priority_threshold",
    "build_analysis_components",
    "validate_inputs",
]
