from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict

from answer_service.core.models import Chat
from answer_service.core.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelBinding:
    name: str
    provider: str
    base_url: str
    api_key: str
    model: str


@dataclass(frozen=True)
class EmbeddingBackend:
    name: str
    url: str
    model: str


def _str_field(raw: Dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


class ProviderRegistry:
    """Resolves the model and embedding backends bound to a chat.

    A chat's secondary binding (``user2``) may name a registered provider;
    anything else falls back to the configured defaults.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def default_model(self) -> ModelBinding:
        return ModelBinding(
            name="default",
            provider=self._settings.llm_provider,
            base_url=self._settings.llm_base_url,
            api_key=self._settings.llm_api_key,
            model=self._settings.llm_model,
        )

    def default_embedding(self) -> EmbeddingBackend:
        return EmbeddingBackend(name="default", url=self._settings.embed_url, model=self._settings.embed_model)

    def resolve_model(self, chat: Chat) -> ModelBinding:
        default = self.default_model()
        raw = self._settings.model_providers.get(chat.user2) if chat.user2 else None
        if not raw:
            return default
        binding = ModelBinding(
            name=chat.user2,
            provider=_str_field(raw, "provider", default.provider).lower(),
            base_url=_str_field(raw, "base_url", default.base_url).rstrip("/"),
            api_key=_str_field(raw, "api_key", default.api_key),
            model=_str_field(raw, "model", default.model),
        )
        logger.debug("chat %s bound to model provider %s", chat.id, binding.name)
        return binding

    def resolve_embedding(self, chat: Chat) -> EmbeddingBackend:
        default = self.default_embedding()
        raw = self._settings.embedding_providers.get(chat.user2) if chat.user2 else None
        if not raw:
            return default
        return EmbeddingBackend(
            name=chat.user2,
            url=_str_field(raw, "url", default.url).rstrip("/"),
            model=_str_field(raw, "model", default.model),
        )
