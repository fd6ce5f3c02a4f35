"""Run artifacts: confidence scoring and the intent card."""

from havoc.artifacts.confidence import (
    ConfidenceBreakdown,
    calculate_confidence_score,
    format_confidence_score,
    get_confidence_level,
)
from havoc.artifacts.intent_card import (
    IntentCard,
    format_intent_card,
    generate_intent_card,
    generate_pr_body,
    generate_pr_title,
)

__all__ = [
    "ConfidenceBreakdown",
    "IntentCard",
    "calculate_confidence_score",
    "format_confidence_score",
    "format_intent_card",
    "generate_intent_card",
    "generate_pr_body",
    "generate_pr_title",
    "get_confidence_level",
]
