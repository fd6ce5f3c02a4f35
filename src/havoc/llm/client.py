"""LLM client shared by the pipeline agents.

Wraps an OpenAI-compatible chat endpoint through LangChain's ChatOpenAI and
adds what the agents need on top of it:
- ask: free-form answer
- ask_structured: JSON answer validated into a pydantic model, with retries
- generate_code: bare source code with stray markdown fences removed

LLMs wrap JSON in prose and fences, leave trailing commas and comments,
and put raw newlines inside strings. parse_json_response repairs those
before decoding.
"""

import asyncio
import json
import logging
import re
from typing import Any, Optional, Type, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError


logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_SYSTEM_PROMPT = "You are an expert software engineer assistant."

STRICT_JSON_SUFFIX = (
    "\n\nIMPORTANT: Return ONLY valid JSON. No markdown, no comments, no extra text."
)

CODE_SYSTEM_PROMPT = """You are an expert software engineer. Your task is to generate clean, production-ready code.

Rules:
- Write clean, well-structured code
- Follow best practices for the language
- Include necessary imports
- Add brief comments for complex logic
- Output ONLY the code, no markdown code blocks
- No explanations or commentary"""

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
_TRAILING_COMMA = re.compile(r",(\s*[\]}])")
# Only comments that start a line or follow a separator, so "http://" survives
_LINE_COMMENT = re.compile(r"(^|[\s,{\[])//[^\n]*", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")
_STRING_LITERAL = re.compile(r'"[^"\\]*(?:\\.[^"\\]*)*"')


class GenerationError(Exception):
    """Raised when the LLM cannot produce a usable answer.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


def _escape_string_whitespace(match: "re.Match[str]") -> str:
    return (
        match.group(0)
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def _fix_json(text: str) -> str:
    fixed = _TRAILING_COMMA.sub(r"\1", text)
    fixed = _LINE_COMMENT.sub(r"\1", fixed)
    fixed = _BLOCK_COMMENT.sub("", fixed)
    return _STRING_LITERAL.sub(_escape_string_whitespace, fixed)


def _aggressive_fix(text: str) -> str:
    """Cut after the last closing bracket and balance what is left open."""
    last_valid = max(text.rfind("}"), text.rfind("]"))
    fixed = text[: last_valid + 1] if last_valid > 0 else text

    fixed += "}" * max(0, fixed.count("{") - fixed.count("}"))
    fixed += "]" * max(0, fixed.count("[") - fixed.count("]"))

    return _TRAILING_COMMA.sub(r"\1", fixed)


def strip_code_fences(text: str) -> str:
    """Remove a leading ```lang line and a trailing ``` from model output."""
    code = text.strip()
    if code.startswith("```"):
        code = re.sub(r"^```\w*\n?", "", code)
        code = re.sub(r"\n?```$", "", code)
    return code.strip()


def parse_json_response(response: str) -> Any:
    """Extract and decode JSON from an LLM response.

    Args:
        response: Raw model output.

    Returns:
        The decoded JSON value.

    Raises:
        ValueError: If no decodable JSON can be recovered.
    """
    cleaned = response.strip()

    block = _FENCED_BLOCK.search(cleaned)
    if block:
        cleaned = block.group(1).strip()
    elif cleaned.startswith("```"):
        cleaned = strip_code_fences(cleaned)

    obj_match = _JSON_OBJECT.search(cleaned)
    arr_match = _JSON_ARRAY.search(cleaned)
    if obj_match:
        cleaned = obj_match.group(0)
    elif arr_match:
        cleaned = arr_match.group(0)

    cleaned = _fix_json(cleaned)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as first_error:
        logger.debug("JSON parse failed, attempting recovery")
        try:
            return json.loads(_aggressive_fix(cleaned))
        except json.JSONDecodeError:
            logger.warning(
                "Failed to recover JSON from LLM response",
                extra={"response_preview": response[:300]},
            )
            raise ValueError(f"JSON parse failed: {first_error}") from first_error


class LLMClient:
    """Async client for an OpenAI-compatible chat endpoint.

    Attributes:
        llm_url: Base URL of the endpoint (e.g. http://localhost:8000/v1).
        model_name: Model to request.
        timeout: Request timeout in seconds.
        temperature: Sampling temperature.
        retry_delay_seconds: Pause between structured-output attempts.

    Example:
        >>> client = LLMClient(llm_url="http://localhost:8000/v1", model_name="gpt-4o-mini")
        >>> plan = await client.ask_structured(prompt, Plan)
    """

    def __init__(
        self,
        llm_url: str,
        model_name: str,
        timeout: float = 120.0,
        temperature: float = 0.2,
        api_key: str = "not-needed",
        retry_delay_seconds: float = 1.0,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.timeout = timeout
        self.temperature = temperature
        self.api_key = api_key
        self.retry_delay_seconds = retry_delay_seconds
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        """Get the LLM client, creating it if necessary."""
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self.api_key,
            )
        return self._llm

    async def ask(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Send a prompt and return the text of the answer.

        Raises:
            GenerationError: If the endpoint call fails or returns non-text.
        """
        messages = [
            SystemMessage(content=system_prompt or DEFAULT_SYSTEM_PROMPT),
            HumanMessage(content=prompt),
        ]

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise GenerationError(f"LLM invocation failed: {e}", cause=e) from e

        content = response.content
        if not isinstance(content, str):
            raise GenerationError(f"Unexpected response type: {type(content)}")
        return content

    async def ask_structured(
        self,
        prompt: str,
        model_cls: Type[T],
        system_prompt: Optional[str] = None,
        retries: int = 2,
    ) -> T:
        """Ask for JSON and validate it into `model_cls`.

        Retries append an instruction to return only JSON.

        Args:
            prompt: The user prompt.
            model_cls: Pydantic model the answer must validate against.
            system_prompt: Optional system instruction.
            retries: Extra attempts after the first.

        Returns:
            The validated model instance.

        Raises:
            GenerationError: If every attempt fails.
        """
        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            attempt_prompt = prompt if attempt == 0 else prompt + STRICT_JSON_SUFFIX
            try:
                response = await self.ask(attempt_prompt, system_prompt)
                data = parse_json_response(response)
                return model_cls.model_validate(data)
            except (GenerationError, ValueError, ValidationError) as e:
                last_error = e
                logger.warning(
                    "Structured LLM attempt failed",
                    extra={
                        "attempt": attempt + 1,
                        "model": model_cls.__name__,
                        "error": str(e),
                    },
                )
                if attempt < retries:
                    await asyncio.sleep(self.retry_delay_seconds)

        raise GenerationError(
            f"Failed to get valid {model_cls.__name__} from LLM after "
            f"{retries + 1} attempts: {last_error}",
            cause=last_error,
        )

    async def generate_code(
        self,
        instruction: str,
        context: str,
        existing_code: Optional[str] = None,
    ) -> str:
        """Generate source code for an instruction.

        Returns:
            The code with surrounding markdown fences removed.
        """
        existing = f"## Existing Code\n{existing_code}" if existing_code else ""
        prompt = (
            f"## Context\n{context}\n\n{existing}\n\n"
            f"## Instruction\n{instruction}\n\nOutput the code now:"
        )
        response = await self.ask(prompt, CODE_SYSTEM_PROMPT)
        return strip_code_fences(response)
