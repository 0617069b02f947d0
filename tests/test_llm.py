import asyncio
import dataclasses
import json

import httpx
import pytest

from answer_service.core.errors import AnswerTimeout, CollaboratorFailure
from answer_service.core.llm import (
    GatewayBackend,
    OpenAICompatBackend,
    ToyModelBackend,
    build_backend,
    build_prompt_messages,
    with_deadline,
)
from answer_service.core.models import Knowledge, Message
from answer_service.core.providers import ModelBinding


def _collect(fragments):
    async def _run():
        return [item async for item in fragments]

    return asyncio.run(_run())


def _binding(provider, base_url="http://llm.test"):
    return ModelBinding(name="primary", provider=provider, base_url=base_url, api_key="sk-test", model="test-model")


def _history():
    return [
        Message(owner="admin", name="q0", author="alice", text="Hello"),
        Message(owner="admin", name="r0", author="AI", text="Hi there"),
        Message(owner="admin", name="r1", author="AI", text=""),
    ]


def test_prompt_messages_order_system_knowledge_history_question():
    messages = build_prompt_messages(
        "What is casbin?",
        _history(),
        "You are a helpful assistant.",
        [Knowledge(text="Casbin is an authorization library.", score=0.9, vector="vec_1")],
    )

    assert [item["role"] for item in messages] == ["system", "system", "user", "assistant", "user"]
    assert messages[0]["content"] == "You are a helpful assistant."
    assert messages[1]["content"] == "Knowledge:\n[1] Casbin is an authorization library."
    assert messages[-1] == {"role": "user", "content": "What is casbin?"}


def test_prompt_messages_without_prompt_or_knowledge():
    messages = build_prompt_messages("ping", [], "", [])

    assert messages == [{"role": "user", "content": "ping"}]


def test_openai_compat_backend_streams_deltas():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        lines = [
            'data: {"choices":[{"delta":{"role":"assistant"}}]}',
            'data: {"choices":[{"delta":{"content":"Hel"}}]}',
            "data: not-json",
            'data: {"choices":[{"delta":{"content":"lo<STOP>"}}]}',
            "data: [DONE]",
            'data: {"choices":[{"delta":{"content":"ignored"}}]}',
        ]
        return httpx.Response(200, text="\n\n".join(lines) + "\n\n")

    backend = OpenAICompatBackend(_binding("openai_compat"), _settings(), transport=httpx.MockTransport(handler))

    fragments = _collect(backend.generate("q", [], "prompt", []))

    assert fragments == ["Hel", "lo<STOP>"]
    assert captured["url"] == "http://llm.test/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"]["stream"] is True
    assert captured["body"]["model"] == "test-model"


def test_openai_compat_backend_maps_http_errors():
    backend = OpenAICompatBackend(
        _binding("openai_compat"),
        _settings(),
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable")),
    )

    with pytest.raises(CollaboratorFailure) as excinfo:
        _collect(backend.generate("q", [], "", []))

    assert "primary" in excinfo.value.message


def test_gateway_backend_parses_delta_and_done_events():
    def handler(request):
        assert request.url.path == "/v1/generate"
        assert request.url.params["stream"] == "true"
        assert request.headers.get("x-api-key") == "sk-test"
        body = (
            "event: meta\ndata: {\"trace_id\":\"t\"}\n\n"
            "event: delta\ndata: {\"delta\":\"Hello \"}\n\n"
            "event: delta\ndata: {\"delta\":\"world\"}\n\n"
            "event: done\ndata: {\"status\":\"ok\"}\n\n"
            "event: delta\ndata: {\"delta\":\"late\"}\n\n"
        )
        return httpx.Response(200, text=body)

    backend = GatewayBackend(_binding("gateway"), _settings(), transport=httpx.MockTransport(handler))

    assert _collect(backend.generate("q", [], "", [])) == ["Hello ", "world"]


def test_gateway_backend_error_event_raises():
    body = "event: delta\ndata: {\"delta\":\"partial\"}\n\nevent: error\ndata: {\"code\":\"provider_timeout\"}\n\n"
    backend = GatewayBackend(
        _binding("gateway"),
        _settings(),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text=body)),
    )

    async def _run():
        seen = []
        with pytest.raises(CollaboratorFailure):
            async for fragment in backend.generate("q", [], "", []):
                seen.append(fragment)
        return seen

    assert asyncio.run(_run()) == ["partial"]


def test_toy_backend_splits_stop_marker():
    backend = ToyModelBackend(stop_marker="<STOP>")

    fragments = _collect(backend.generate("why?", [], "", [Knowledge(text="alpha beta", score=1.0)]))

    assert "".join(fragments) == "Based on the available knowledge: alpha beta<STOP>"
    assert fragments[-2:] == ["<ST", "OP>"]


def test_toy_backend_without_knowledge():
    fragments = _collect(ToyModelBackend().generate("why?", [], "", []))

    assert "".join(fragments) == "I could not find background knowledge for: why?"


def test_with_deadline_passes_fast_streams():
    async def fast():
        yield "a"
        yield "b"

    assert _collect(with_deadline(fast(), 1.0)) == ["a", "b"]


def test_with_deadline_raises_timeout_and_closes_source():
    closed = []

    async def slow():
        try:
            yield "a"
            await asyncio.sleep(1.0)
            yield "b"
        finally:
            closed.append(True)

    async def _run():
        seen = []
        with pytest.raises(AnswerTimeout):
            async for fragment in with_deadline(slow(), 0.05):
                seen.append(fragment)
        return seen

    assert asyncio.run(_run()) == ["a"]
    assert closed == [True]


def test_build_backend_selects_provider(caplog):
    settings = _settings()

    assert isinstance(build_backend(_binding("openai_compat"), settings), OpenAICompatBackend)
    assert isinstance(build_backend(_binding("gateway"), settings), GatewayBackend)
    assert isinstance(build_backend(_binding("toy"), settings), ToyModelBackend)
    with caplog.at_level("WARNING"):
        assert isinstance(build_backend(_binding("mystery"), settings), ToyModelBackend)
    assert "unknown model provider mystery" in caplog.text


def _settings():
    from answer_service.core.settings import SETTINGS

    return dataclasses.replace(SETTINGS, llm_max_tokens=64, llm_temperature=0.0, stop_markers=["<STOP>"], stream_token_delay_ms=0)
