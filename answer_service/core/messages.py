from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from answer_service.core.errors import CollaboratorFailure, NotFound
from answer_service.core.models import Message, MessageAuthor, get_id, now_iso, parse_time
from answer_service.core.storage import Storage, run_storage

logger = logging.getLogger(__name__)


def _random_name() -> str:
    return f"message_{uuid.uuid4().hex[:12]}"


def _after(created_time: str) -> str:
    parsed = parse_time(created_time)
    if parsed is None:
        return now_iso()
    return (parsed + timedelta(milliseconds=1)).isoformat(timespec="milliseconds")


def build_placeholder(question: Message) -> Message:
    """Return the empty AI answer that will later be filled by the answer stream."""
    return Message(
        owner=question.owner,
        name=_random_name(),
        created_time=_after(question.created_time),
        user=question.user,
        chat=question.chat,
        author=MessageAuthor.AI.value,
        reply_to=question.id,
        text="",
        vector_scores=[],
    )


async def add_message(storage: Storage, message: Message) -> tuple[bool, Optional[Message]]:
    """Store a user message and, for AI chats, its pending answer placeholder."""
    chat = None
    if message.chat:
        chat_id = get_id(message.owner, message.chat)
        chat = await run_storage(storage.get_chat, chat_id)
        if chat is None:
            raise NotFound(f"The chat: {chat_id} is not found")

    stored = replace(message, name=message.name or _random_name(), created_time=now_iso())
    success = await run_storage(storage.create, stored)
    if not success or chat is None or not chat.is_ai:
        return success, None

    placeholder = build_placeholder(stored)
    if not await run_storage(storage.create, placeholder):
        raise CollaboratorFailure(f"The message: {placeholder.id} could not be created")
    logger.debug("created answer placeholder %s for %s", placeholder.id, stored.id)
    return success, placeholder
