from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import AsyncIterator, List, Optional, Protocol, Sequence

import httpx

from answer_service.core.errors import AnswerTimeout, CollaboratorFailure
from answer_service.core.models import Knowledge, Message
from answer_service.core.providers import ModelBinding
from answer_service.core.settings import Settings

logger = logging.getLogger(__name__)


class ModelBackend(Protocol):
    def generate(
        self,
        question: str,
        history: Sequence[Message],
        prompt: str,
        knowledge: Sequence[Knowledge],
    ) -> AsyncIterator[str]: ...


def _format_knowledge(knowledge: Sequence[Knowledge]) -> Optional[str]:
    if not knowledge:
        return None
    lines = ["Knowledge:"]
    for idx, item in enumerate(knowledge, start=1):
        snippet = (item.text or "").replace("\n", " ").strip()
        if snippet:
            lines.append(f"[{idx}] {snippet}")
    return "\n".join(lines) if len(lines) > 1 else None


def build_prompt_messages(
    question: str,
    history: Sequence[Message],
    prompt: str,
    knowledge: Sequence[Knowledge],
) -> List[dict]:
    messages: List[dict] = []
    if prompt:
        messages.append({"role": "system", "content": prompt})
    knowledge_block = _format_knowledge(knowledge)
    if knowledge_block:
        messages.append({"role": "system", "content": knowledge_block})
    for item in history:
        if not item.text:
            continue
        role = "assistant" if item.is_ai_authored else "user"
        messages.append({"role": role, "content": item.text})
    messages.append({"role": "user", "content": question})
    return messages


def _tokenize_for_stream(text: str) -> List[str]:
    if not text:
        return []
    tokens = re.findall(r"\S+\s*", text)
    return tokens if tokens else [text]


class ToyModelBackend:
    """Deterministic backend that answers from the retrieved knowledge.

    The answer ends with ``stop_marker`` split over two fragments, the way
    real backends leak their end-of-text token.
    """

    def __init__(self, stop_marker: str = "", token_delay_ms: int = 0) -> None:
        self._stop_marker = stop_marker
        self._delay = max(0, token_delay_ms) / 1000.0

    def _synthesize(self, question: str, knowledge: Sequence[Knowledge]) -> str:
        if knowledge:
            summary = " ".join(item.text[:160].strip() for item in knowledge[:2])
            return f"Based on the available knowledge: {summary}"
        return f"I could not find background knowledge for: {question}"

    async def generate(
        self,
        question: str,
        history: Sequence[Message],
        prompt: str,
        knowledge: Sequence[Knowledge],
    ) -> AsyncIterator[str]:
        for token in _tokenize_for_stream(self._synthesize(question, knowledge)):
            yield token
            if self._delay > 0:
                await asyncio.sleep(self._delay)
        if self._stop_marker:
            half = max(1, len(self._stop_marker) // 2)
            yield self._stop_marker[:half]
            yield self._stop_marker[half:]


class OpenAICompatBackend:
    """Streams an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        binding: ModelBinding,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._binding = binding
        self._max_tokens = settings.llm_max_tokens
        self._temperature = settings.llm_temperature
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._binding.api_key:
            headers["authorization"] = f"Bearer {self._binding.api_key}"
        return headers

    def _payload(self, messages: List[dict]) -> dict:
        body = {
            "model": self._binding.model,
            "messages": messages,
            "temperature": self._temperature,
            "stream": True,
        }
        if self._max_tokens:
            body["max_tokens"] = self._max_tokens
        return body

    async def generate(
        self,
        question: str,
        history: Sequence[Message],
        prompt: str,
        knowledge: Sequence[Knowledge],
    ) -> AsyncIterator[str]:
        messages = build_prompt_messages(question, history, prompt, knowledge)
        try:
            async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self._binding.base_url}/chat/completions",
                    json=self._payload(messages),
                    headers=self._headers(),
                ) as response:
                    response.raise_for_status()
                    async for raw_line in response.aiter_lines():
                        line = raw_line.strip() if raw_line else ""
                        if not line or not line.startswith("data:"):
                            continue
                        data = line.split(":", 1)[1].strip()
                        if data == "[DONE]":
                            break
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        choices = event.get("choices") if isinstance(event, dict) else None
                        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                            continue
                        delta = choices[0].get("delta")
                        content = delta.get("content") if isinstance(delta, dict) else None
                        if content is None:
                            content = choices[0].get("text")
                        if isinstance(content, str) and content:
                            yield content
        except httpx.HTTPError as exc:
            raise CollaboratorFailure(f"model provider {self._binding.name} failed: {exc}") from exc


class GatewayBackend:
    """Streams an LLM gateway ``/v1/generate?stream=true`` endpoint."""

    def __init__(
        self,
        binding: ModelBinding,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._binding = binding
        self._max_tokens = settings.llm_max_tokens
        self._temperature = settings.llm_temperature
        self._transport = transport

    async def generate(
        self,
        question: str,
        history: Sequence[Message],
        prompt: str,
        knowledge: Sequence[Knowledge],
    ) -> AsyncIterator[str]:
        payload = {
            "version": "v1",
            "model": self._binding.model,
            "messages": build_prompt_messages(question, history, prompt, knowledge),
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "citations_required": False,
            "stream": True,
        }
        headers = {"x-api-key": self._binding.api_key} if self._binding.api_key else {}
        event_name = "message"
        data_lines: List[str] = []
        try:
            async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self._binding.base_url}/v1/generate?stream=true",
                    json=payload,
                    headers=headers,
                ) as response:
                    response.raise_for_status()
                    async for raw_line in response.aiter_lines():
                        line = raw_line if raw_line is not None else ""
                        if line.startswith("event:"):
                            event_name = line.split(":", 1)[1].strip() or "message"
                            continue
                        if line.startswith("data:"):
                            data_lines.append(line.split(":", 1)[1].strip())
                            continue
                        if line != "":
                            continue
                        data = "\n".join(data_lines)
                        name = event_name
                        data_lines = []
                        event_name = "message"
                        if name == "error":
                            raise CollaboratorFailure(f"model provider {self._binding.name} failed: {data}")
                        if name == "done":
                            break
                        if name != "delta" or not data:
                            continue
                        try:
                            parsed = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        delta = parsed.get("delta") if isinstance(parsed, dict) else None
                        if isinstance(delta, str) and delta:
                            yield delta
        except httpx.HTTPError as exc:
            raise CollaboratorFailure(f"model provider {self._binding.name} failed: {exc}") from exc


async def with_deadline(fragments: AsyncIterator[str], timeout_sec: float) -> AsyncIterator[str]:
    """Yield from ``fragments`` until the whole stream exceeds ``timeout_sec``."""
    iterator = fragments.__aiter__()
    deadline = time.monotonic() + timeout_sec
    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AnswerTimeout(f"the model did not finish within {timeout_sec:g}s")
            try:
                fragment = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as exc:
                raise AnswerTimeout(f"the model did not finish within {timeout_sec:g}s") from exc
            yield fragment
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def build_backend(binding: ModelBinding, settings: Settings) -> ModelBackend:
    if binding.provider == "openai_compat":
        return OpenAICompatBackend(binding, settings)
    if binding.provider == "gateway":
        return GatewayBackend(binding, settings)
    if binding.provider != "toy":
        logger.warning("unknown model provider %s for %s, using toy backend", binding.provider, binding.name)
    stop_marker = settings.stop_markers[0] if settings.stop_markers else ""
    return ToyModelBackend(stop_marker=stop_marker, token_delay_ms=settings.stream_token_delay_ms)
