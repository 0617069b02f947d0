from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from answer_service.core.errors import AnswerError, CollaboratorFailure, InvalidInput, InvalidState, NotFound
from answer_service.core.metrics import metrics
from answer_service.core.models import Chat, Knowledge, Message, ReplyKind, StoreConfig, VectorScore, get_id
from answer_service.core.providers import ModelBinding, ProviderRegistry
from answer_service.core.retrieval import KnowledgeRetriever, NoKnowledgeFound
from answer_service.core.storage import Storage, run_storage

logger = logging.getLogger(__name__)


@dataclass
class AnswerTarget:
    """A validated placeholder message together with its chat, store and question."""

    message: Message
    chat: Chat
    store: StoreConfig
    question: str
    question_id: str = ""


@dataclass
class AnswerContext:
    question: str
    binding: ModelBinding
    knowledge: List[Knowledge] = field(default_factory=list)
    history: List[Message] = field(default_factory=list)

    @property
    def vector_scores(self) -> List[VectorScore]:
        return [item.provenance() for item in self.knowledge]


class ContextAssembler:
    def __init__(
        self,
        storage: Storage,
        retriever: KnowledgeRetriever,
        providers: ProviderRegistry,
        store_owner: str,
    ) -> None:
        self._storage = storage
        self._retriever = retriever
        self._providers = providers
        self._store_owner = store_owner

    async def load_target(self, message_id: str) -> AnswerTarget:
        message = await run_storage(self._storage.get, message_id)
        if message is None:
            raise NotFound(f"The message: {message_id} is not found")
        if not message.is_pending_answer():
            raise InvalidState("The message is invalid")

        chat_id = get_id(message.owner, message.chat)
        chat = await run_storage(self._storage.get_chat, chat_id)
        # TODO: decide whether chats outside the message's organization must be rejected here.
        if chat is None:
            raise NotFound(f"The chat: {chat_id} is not found")
        if not chat.is_ai:
            raise InvalidState('The chat type must be "AI"')

        store = await run_storage(self._storage.get_default, self._store_owner)
        if store is None:
            raise NotFound("The default store is not found")

        question, question_id = await self._resolve_question(message, store)
        return AnswerTarget(message=message, chat=chat, store=store, question=question, question_id=question_id)

    async def _resolve_question(self, message: Message, store: StoreConfig) -> tuple[str, str]:
        if message.reply_kind is ReplyKind.WELCOME:
            question, question_id = store.welcome, ""
        else:
            parent = await run_storage(self._storage.get, message.reply_to)
            if parent is None:
                raise NotFound(f"The message: {message.reply_to} is not found")
            question, question_id = parent.text, parent.id
        if not question:
            raise InvalidInput("The question should not be empty")
        return question, question_id

    async def _retrieve(self, target: AnswerTarget) -> List[Knowledge]:
        embedding = self._providers.resolve_embedding(target.chat)
        try:
            return await self._retriever.nearest(embedding, self._store_owner, target.question)
        except NoKnowledgeFound:
            metrics.inc("answer_knowledge_empty_total")
            return []
        except AnswerError:
            raise
        except Exception as exc:
            raise CollaboratorFailure(str(exc) or exc.__class__.__name__) from exc

    async def gather(self, target: AnswerTarget) -> AnswerContext:
        binding = self._providers.resolve_model(target.chat)
        knowledge = await self._retrieve(target)
        recent = await run_storage(self._storage.get_recent, target.chat.name, target.store.memory_limit)
        skip = {target.message.id, target.question_id}
        history = [item for item in recent if item.text and item.id not in skip]
        return AnswerContext(question=target.question, binding=binding, knowledge=knowledge, history=history)
