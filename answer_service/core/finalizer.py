from dataclasses import replace
from typing import List

from answer_service.core.errors import CollaboratorFailure
from answer_service.core.models import Message, VectorScore
from answer_service.core.storage import MessageStore, run_storage


async def finalize_answer(store: MessageStore, message: Message, answer: str, vector_scores: List[VectorScore]) -> Message:
    """Write the streamed answer and its provenance into the placeholder message."""
    updated = replace(message, text=answer, vector_scores=list(vector_scores))
    ok = await run_storage(store.update, message.id, updated)
    if not ok:
        raise CollaboratorFailure(f"The message: {message.id} could not be updated")
    return updated
