"""Token estimation for rate-limit accounting."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable

import tiktoken

from app.core.logging import get_logger

from .types import ChatMessage


logger = get_logger("ai.tokens")

# Per-message framing overhead in chat formats.
MESSAGE_OVERHEAD_TOKENS = 4


@lru_cache(maxsize=8)
def _get_encoding(model: str) -> tiktoken.Encoding:
    """Encoding for a model; cl100k_base for models tiktoken doesn't know (Gemini)."""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str, model: str = "gpt-4o-mini") -> int:
    try:
        encoding = _get_encoding(model)
    except Exception as e:
        # Encoding files are fetched on first use; estimate when unavailable.
        logger.debug(f"tiktoken unavailable, estimating tokens: {e}")
        return max(1, len(text) // 4)
    return len(encoding.encode(text))


def estimate_request_tokens(
    messages: Iterable[ChatMessage],
    max_output_tokens: int,
    model: str = "gpt-4o-mini",
) -> int:
    """Prompt tokens plus the output allowance, charged up front against the budget."""
    prompt = sum(count_tokens(m.content, model) + MESSAGE_OVERHEAD_TOKENS for m in messages)
    return prompt + max_output_tokens
