"""
Context trimmer — sliding-window eviction for long conversations.

The policy lives in one primitive, drop_oldest_non_system(), which removes a
single message per call and never touches a leading system prompt. Budget
handling sits on top of it in trim_to_budget(), which keeps calling the
primitive until whatever metric the caller measures fits.

Config (in config.yaml):

    context:
      max_tokens: 3000   # 0 disables trimming

Usage:

    from chatline.trimmer import trim_to_budget
    dropped = trim_to_budget(conversation, cfg["context"]["max_tokens"])
"""

from __future__ import annotations

import json
import logging
from typing import Callable

from chatline.conversation import Conversation
from chatline.template import render_message

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token for English text."""
    if not text:
        return 0
    return max(1, len(text) // 4)


def conversation_tokens(conversation: Conversation) -> int:
    """Estimated prompt tokens for the templated conversation."""
    return sum(estimate_tokens(render_message(m)) for m in conversation)


def serialized_size(conversation: Conversation) -> int:
    """UTF-8 byte size of the compact JSON form."""
    payload = json.dumps(conversation.to_list(), ensure_ascii=False, separators=(",", ":"))
    return len(payload.encode("utf-8"))


def drop_oldest_non_system(conversation: Conversation) -> bool:
    """
    Remove the oldest message that is not the leading system prompt.

    One message per call. Returns False, and changes nothing, once only the
    system prompt (or nothing at all) is left.
    """
    return conversation.drop_oldest_non_system()


def trim_to_budget(
    conversation: Conversation,
    budget: int,
    measure: Callable[[Conversation], int] = conversation_tokens,
    keep_last: int = 0,
) -> int:
    """
    Drop oldest messages until measure(conversation) <= budget.

    Returns the number of messages dropped. A budget <= 0 disables trimming.
    The newest keep_last messages are never dropped.
    Stops early when nothing more can be dropped, so the result may still be
    over budget if the system prompt alone exceeds it.
    """
    if budget <= 0:
        return 0

    dropped = 0
    while measure(conversation) > budget:
        droppable = len(conversation) - (1 if conversation.has_system_prompt else 0)
        if droppable <= keep_last or not drop_oldest_non_system(conversation):
            logger.warning(
                "Context still over budget (%d > %d) with nothing left to drop",
                measure(conversation), budget,
            )
            break
        dropped += 1

    if dropped:
        logger.debug("Trimmed %d message(s) to fit budget %d", dropped, budget)
    return dropped
