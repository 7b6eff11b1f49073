"""Contract of the content-generation service.

The core depends only on this shape: a callable taking a transcript, a
GenerateConfig and free-form options, returning a list of typed parts. Provider
adapters live outside this package.
"""

from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from taskpilot.core.models import FunctionCall, Turn
from taskpilot.core.schema import FunctionDef


class ModelTier(str, Enum):
    """Relative cost/quality tier requested from the provider."""

    DEFAULT = "default"
    CHEAP = "cheap"
    LITE = "lite"


class ResponseShape(BaseModel):
    """Kinds of parts the caller expects back."""

    text: bool = False
    function_call: bool = False
    web_search: bool = False


class GenerateConfig(BaseModel):
    """Per-request generation settings."""

    function_defs: list[FunctionDef] = Field(default_factory=list)
    required_function_name: str | None = None
    model_tier: ModelTier = ModelTier.DEFAULT
    temperature: float = 0.7
    expected_response: ResponseShape = Field(default_factory=ResponseShape)


class PartType(str, Enum):
    TEXT = "text"
    FUNCTION_CALL = "functionCall"
    EXECUTABLE_CODE = "executableCode"
    CODE_EXECUTION_RESULT = "codeExecutionResult"
    WEB_SEARCH = "webSearch"


class WebSearchResult(BaseModel):
    text: str
    sources: list[str] = Field(default_factory=list)


class Part(BaseModel):
    """One typed piece of a generation response."""

    type: PartType
    text: str | None = None
    function_call: FunctionCall | None = None
    code: str | None = None
    output: str | None = None
    search: WebSearchResult | None = None

    @classmethod
    def of_text(cls, text: str) -> "Part":
        return cls(type=PartType.TEXT, text=text)

    @classmethod
    def of_call(cls, name: str, args: dict[str, Any] | None = None, id: str | None = None) -> "Part":
        return cls(
            type=PartType.FUNCTION_CALL,
            function_call=FunctionCall(name=name, id=id, args=args or {}),
        )


GenerateContentFn = Callable[[list[Turn], GenerateConfig, dict[str, Any]], list[Part]]
GenerateImageFn = Callable[[str, dict[str, Any]], list[str]]


def function_calls(parts: list[Part]) -> list[FunctionCall]:
    """Extract function calls from a response, in order."""
    return [p.function_call for p in parts if p.type == PartType.FUNCTION_CALL and p.function_call]


def joined_text(parts: list[Part]) -> str | None:
    """Concatenate text parts, or None if the response has none."""
    texts = [p.text for p in parts if p.type == PartType.TEXT and p.text]
    return "\n".join(texts) if texts else None


def no_image_generation(prompt: str, options: dict[str, Any]) -> list[str]:
    """Image generation stand-in for deployments without an image provider."""
    raise NotImplementedError("Image generation is not configured")
