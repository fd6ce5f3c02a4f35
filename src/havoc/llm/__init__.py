"""LLM access for the pipeline agents."""

from havoc.llm.client import (
    GenerationError,
    LLMClient,
    parse_json_response,
    strip_code_fences,
)

__all__ = [
    "GenerationError",
    "LLMClient",
    "parse_json_response",
    "strip_code_fences",
]
