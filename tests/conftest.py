"""Shared fixtures for the answer-service tests."""
import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from answer_service.core.metrics import metrics
from answer_service.core.models import Chat, Message, StoreConfig
from answer_service.core.pipeline import AnswerPipeline, AnswerRun
from answer_service.core.retrieval import InMemoryRetriever
from answer_service.core.settings import SETTINGS
from answer_service.core.storage import InMemoryStorage


class ScriptedBackend:
    """Model backend that replays fixed fragments and records its calls."""

    def __init__(self, fragments, error=None, delay_sec=0.0):
        self.fragments = list(fragments)
        self.error = error
        self.delay_sec = delay_sec
        self.calls = []

    async def generate(self, question, history, prompt, knowledge):
        self.calls.append({"question": question, "history": list(history), "prompt": prompt, "knowledge": list(knowledge)})
        for fragment in self.fragments:
            if self.delay_sec:
                await asyncio.sleep(self.delay_sec)
            yield fragment
        if self.error is not None:
            raise self.error


def iso_minutes_ago(minutes):
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat(timespec="milliseconds")


def collect_events(pipeline, run):
    async def _run():
        events = []
        async for event in pipeline.stream(run):
            events.append(event)
        return events

    return asyncio.run(_run())


def parse_events(raw_events):
    parsed = []
    for raw in raw_events:
        lines = raw.strip("\n").split("\n")
        name = lines[0].split(":", 1)[1].strip()
        data = lines[1].split(":", 1)[1].strip()
        parsed.append((name, data))
    return parsed


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings(tmp_path):
    return dataclasses.replace(
        SETTINGS,
        store_owner="admin",
        storage_backend="memory",
        retrieval_mode="memory",
        llm_provider="toy",
        llm_timeout_ms=5000,
        cleaner_window=6,
        stop_markers=["<STOP>", "</s>"],
        audit_log_path=str(tmp_path / "audit.log"),
        debug_log_question=False,
        model_providers={},
        embedding_providers={},
    )


@pytest.fixture
def storage():
    store = InMemoryStorage()
    store.add_store(
        StoreConfig(
            owner="admin",
            name="store-built-in",
            welcome="Hi, how can I help?",
            prompt="You are a helpful assistant.",
            memory_limit=5,
            limit_minutes=60,
            frequency=3,
        )
    )
    store.add_chat(Chat(owner="admin", name="chat_1", type="AI", user="alice"))
    store.create(
        Message(
            owner="admin",
            name="q1",
            created_time=iso_minutes_ago(1),
            user="alice",
            chat="chat_1",
            author="alice",
            text="What is casbin?",
        )
    )
    store.create(
        Message(
            owner="admin",
            name="a1",
            created_time=iso_minutes_ago(0),
            user="alice",
            chat="chat_1",
            author="AI",
            reply_to="admin/q1",
        )
    )
    return store


@pytest.fixture
def retriever():
    knowledge = InMemoryRetriever(top_k=3)
    knowledge.add("admin", "vec_1", "Casbin is an authorization library that supports access control models.")
    knowledge.add("admin", "vec_2", "Casdoor is an identity and access management platform.")
    return knowledge


@pytest.fixture
def make_pipeline(storage, retriever, settings):
    def _make(backend, **overrides):
        return AnswerPipeline(
            storage=overrides.get("storage", storage),
            retriever=overrides.get("retriever", retriever),
            settings=overrides.get("settings", settings),
            backend_factory=lambda binding: backend,
        )

    return _make


@pytest.fixture
def answer_run():
    return AnswerRun(message_id="admin/a1", session_user=None, trace_id="trace_test", request_id="req_test")
