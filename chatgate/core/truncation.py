"""Token-budget truncation of conversation history.

Costs are a character heuristic (``ceil(len / 4)``), not a tokenizer. Only the
ordering matters: longer content always costs at least as much.
"""

from __future__ import annotations

import math
from typing import Sequence

from chatgate.core.errors import TruncationDegenerateInput
from chatgate.core.models import Message


CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def conversation_cost(conversation: Sequence[Message]) -> int:
    return sum(estimate_tokens(message.content) for message in conversation)


def truncate(conversation: Sequence[Message], budget: int) -> list[Message]:
    """Return the newest contiguous suffix of ``conversation`` whose cost fits ``budget``.

    Messages are scanned newest to oldest and the scan stops at the first one
    that would push the total over budget. The newest message is always kept,
    even when it alone exceeds the budget.
    """
    if not conversation:
        raise TruncationDegenerateInput("conversation is empty")

    kept: list[Message] = []
    total = 0
    for message in reversed(conversation):
        cost = estimate_tokens(message.content)
        if total + cost > budget:
            break
        kept.append(message)
        total += cost

    if not kept:
        return [conversation[-1]]
    kept.reverse()
    return kept
