"""Deterministic conversation identity for a pair of users."""

from __future__ import annotations

import logging
from typing import Callable

from .models import Conversation, _now_ms

logger = logging.getLogger(__name__)

SEPARATOR = "_"


def conversation_id(user_a: str, user_b: str) -> str:
    """Return the id both participants derive for their conversation.

    The pair is sorted before joining, so ``conversation_id(a, b)`` equals
    ``conversation_id(b, a)``.
    """

    if not user_a or not user_b:
        raise ValueError("both user ids are required")
    if user_a == user_b:
        raise ValueError("cannot open a conversation with yourself")
    low, high = sorted((user_a, user_b))
    return f"{low}{SEPARATOR}{high}"


async def get_or_create_conversation(
    store,
    user_a: str,
    user_b: str,
    *,
    now_func: Callable[[], int] = _now_ms,
) -> Conversation:
    """Fetch the pair's conversation, creating an empty one when absent.

    Read-then-write, not atomic: two clients racing on first contact both
    write an equivalent empty document under the same id.
    """

    conv_id = conversation_id(user_a, user_b)
    existing = await store.get_conversation(conv_id)
    if existing is not None:
        return existing

    conversation = Conversation(
        conv_id=conv_id,
        members=[user_a, user_b],
        last_message="",
        last_time_ms=now_func(),
    )
    await store.put_conversation(conversation)
    logger.info("created conversation %s", conv_id)
    return conversation
