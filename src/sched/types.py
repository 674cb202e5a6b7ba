import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProviderCompletion(BaseModel):
    """What a provider adapter returns for one successful call."""

    content: str
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class CompletionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    system_prompt: str = ""
    user_prompt: str = Field(min_length=1)


class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResult(BaseModel):
    content: str
    provider: str
    model: str
    attempts: int = 1
    usage: CompletionUsage = Field(default_factory=CompletionUsage)


_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")


def extract_json_payload(raw: str) -> str:
    """Strip markdown fences or cut to the outermost braces of a model reply."""
    trimmed = raw.strip()
    if not trimmed:
        return trimmed
    if trimmed.startswith("```"):
        return _FENCE_END.sub("", _FENCE_START.sub("", trimmed)).strip()
    first = trimmed.find("{")
    last = trimmed.rfind("}")
    if first >= 0 and last > first:
        return trimmed[first : last + 1]
    return trimmed
