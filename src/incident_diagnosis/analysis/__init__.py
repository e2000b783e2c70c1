"""Relevance ranking, token estimation, and request assembly."""

from incident_diagnosis.analysis.prompt_assembler import (
    PromptAssembler,
    render_base_narrative,
    render_fragment_block,
)
from incident_diagnosis.analysis.scoring import (
    KeywordRelevanceScorer,
    ScoringWeights,
    extract_identifiers,
    extract_search_terms,
)
from incident_diagnosis.analysis.selector import ContextSelector, RelevanceScorer
from incident_diagnosis.analysis.summary import summarize_project
from incident_diagnosis.analysis.tokens import (
    CharRatioTokenEstimator,
    TokenEstimator,
    estimate_tokens,
    truncate,
)

__all__ = [
    "CharRatioTokenEstimator",
    "ContextSelector",
    "KeywordRelevanceScorer",
    "PromptAssembler",
    "RelevanceScorer",
    "ScoringWeights",
    "TokenEstimator",
    "estimate_tokens",
    "extract_identifiers",
    "extract_search_terms",
    "render_base_narrative",
    "render_fragment_block",
    "summarize_project",
    "truncate",
]
