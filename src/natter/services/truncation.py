"""Pre-send trimming of the message window to fit a provider's token budget."""

from __future__ import annotations

import logging

from ..config import TruncationConfig
from ..models import Message

logger = logging.getLogger(__name__)


def context_truncation(
    messages: list[Message],
    max_output_tokens: int,
    config: TruncationConfig,
) -> list[Message]:
    """Drop the oldest messages until prompt plus ``max_output_tokens`` fits ``config.max_tokens``.

    Checkpoint messages (``is_context``) are never dropped. Whenever anything
    had to be trimmed, the result is also made to end on a system message.
    """
    if not config.enabled or max_output_tokens == 0:
        return messages

    current = sum(msg.token_count for msg in messages)
    if current + max_output_tokens <= config.max_tokens:
        return messages

    trimmed = list(messages)
    idx = 0
    while current + max_output_tokens > config.max_tokens and len(trimmed) >= 2 and idx < len(trimmed):
        if trimmed[idx].is_context:
            idx += 1
            continue
        removed = trimmed.pop(idx)
        current -= removed.token_count

    if trimmed and not trimmed[-1].is_system():
        trimmed.pop()

    logger.debug("Truncated context from %d to %d messages (%d tokens)", len(messages), len(trimmed), current)
    return trimmed
