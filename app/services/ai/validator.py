"""Parse and validate model output against a pydantic schema."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError


T = TypeVar("T", bound=BaseModel)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

# Output referencing web sources the model never saw is treated as invented.
_HALLUCINATION_PATTERNS = (
    (re.compile(r"https?://", re.IGNORECASE), "contains a URL"),
    (re.compile(r"\bwww\.", re.IGNORECASE), "contains a web address"),
    (re.compile(r"\baccording to (?:bloomberg|reuters|cnbc|the wall street journal)\b", re.IGNORECASE),
     "cites an external news source"),
)


@dataclass
class ValidationOutcome(Generic[T]):
    ok: bool
    value: T | None = None
    errors: list[str] = field(default_factory=list)


def extract_json(text: str) -> dict[str, Any] | None:
    """Pull the outermost JSON object out of a model reply (code fences allowed)."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
    if cleaned.endswith("```"):
        cleaned = cleaned[: -3]
    cleaned = cleaned.strip()

    for candidate in (cleaned, *(_JSON_OBJECT.findall(cleaned)[:1])):
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _format_errors(exc: PydanticValidationError) -> list[str]:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "<root>"
        errors.append(f"{location}: {error['msg']}")
    return errors


def _hallucination_errors(text: str) -> list[str]:
    return [f"output {reason}" for pattern, reason in _HALLUCINATION_PATTERNS if pattern.search(text)]


def validate_output(text: str, model: type[T]) -> ValidationOutcome[T]:
    data = extract_json(text)
    if data is None:
        return ValidationOutcome(ok=False, errors=["response is not a JSON object"])

    try:
        value = model.model_validate(data)
    except PydanticValidationError as e:
        return ValidationOutcome(ok=False, errors=_format_errors(e))

    suspicious = _hallucination_errors(text)
    if suspicious:
        return ValidationOutcome(ok=False, errors=suspicious)
    return ValidationOutcome(ok=True, value=value)


def build_corrective_prompt(original_prompt: str, errors: list[str]) -> str:
    listed = "\n".join(f"- {error}" for error in errors[:20])
    return (
        "Your previous response could not be used. Fix these problems:\n"
        f"{listed}\n\n"
        "Respond with ONLY a single JSON object that matches the requested schema exactly. "
        "Use only the data provided below; do not cite websites or outside sources. "
        "No markdown, no commentary.\n\n"
        f"{original_prompt}"
    )
