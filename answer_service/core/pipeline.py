"""Streaming answer pipeline.

One run answers one placeholder message:

    validating -> rate_checking -> retrieving -> streaming -> finalizing -> done

Any failure moves the run to ``error`` and emits exactly one ``error`` event.
Rate checking is skipped for callers with an authenticated session.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional

from answer_service.core.audit import audit_answer
from answer_service.core.cleaner import StreamCleaner, StreamState
from answer_service.core.context import AnswerContext, AnswerTarget, ContextAssembler
from answer_service.core.errors import AnswerError, CollaboratorFailure, StreamWriteFailure
from answer_service.core.finalizer import finalize_answer
from answer_service.core.llm import ModelBackend, build_backend, with_deadline
from answer_service.core.metrics import metrics
from answer_service.core.providers import ModelBinding, ProviderRegistry
from answer_service.core.quota import QuotaGate
from answer_service.core.retrieval import KnowledgeRetriever, build_retriever
from answer_service.core.settings import Settings
from answer_service.core.sse import EventStream
from answer_service.core.storage import Storage, build_storage

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    VALIDATING = "validating"
    RATE_CHECKING = "rate_checking"
    RETRIEVING = "retrieving"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


_TRANSITIONS = {
    PipelineState.VALIDATING: {PipelineState.RATE_CHECKING, PipelineState.RETRIEVING, PipelineState.ERROR},
    PipelineState.RATE_CHECKING: {PipelineState.RETRIEVING, PipelineState.ERROR},
    PipelineState.RETRIEVING: {PipelineState.STREAMING, PipelineState.ERROR},
    PipelineState.STREAMING: {PipelineState.FINALIZING, PipelineState.ERROR},
    PipelineState.FINALIZING: {PipelineState.DONE, PipelineState.ERROR},
    PipelineState.DONE: set(),
    PipelineState.ERROR: set(),
}


@dataclass
class AnswerRun:
    message_id: str
    session_user: Optional[str] = None
    trace_id: str = ""
    request_id: str = ""
    state: PipelineState = PipelineState.VALIDATING
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.VALIDATING])
    error: Optional[AnswerError] = None
    answer: str = ""
    knowledge_count: int = 0

    @property
    def authenticated(self) -> bool:
        return bool(self.session_user)

    def advance(self, state: PipelineState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal pipeline transition {self.state.value} -> {state.value}")
        logger.debug("answer run %s: %s -> %s", self.request_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, exc: AnswerError) -> None:
        self.error = exc
        if self.state not in (PipelineState.DONE, PipelineState.ERROR):
            self.advance(PipelineState.ERROR)


class AnswerPipeline:
    def __init__(
        self,
        storage: Storage,
        retriever: KnowledgeRetriever,
        settings: Settings,
        backend_factory: Optional[Callable[[ModelBinding], ModelBackend]] = None,
        providers: Optional[ProviderRegistry] = None,
    ) -> None:
        self.storage = storage
        self.retriever = retriever
        self._settings = settings
        self._providers = providers or ProviderRegistry(settings)
        self._backend_factory = backend_factory or (lambda binding: build_backend(binding, settings))
        self._assembler = ContextAssembler(storage, retriever, self._providers, settings.store_owner)
        self._quota = QuotaGate(storage)
        self._active = 0

    def _new_stream_state(self) -> StreamState:
        return StreamState(StreamCleaner(self._settings.cleaner_window, self._settings.stop_markers))

    def _log_context(self, run: AnswerRun, context: AnswerContext) -> None:
        if self._settings.debug_log_question:
            logger.debug("answer run %s question=%r", run.request_id, context.question)
        logger.info(
            "answer run trace_id=%s request_id=%s message=%s question_chars=%s knowledge=%s history=%s provider=%s",
            run.trace_id,
            run.request_id,
            run.message_id,
            len(context.question),
            len(context.knowledge),
            len(context.history),
            context.binding.name,
        )

    async def _prepare(self, run: AnswerRun) -> tuple[AnswerTarget, AnswerContext]:
        target = await self._assembler.load_target(run.message_id)
        if not run.authenticated:
            run.advance(PipelineState.RATE_CHECKING)
            store = target.store
            await self._quota.admit(target.message.user, store.limit_minutes, store.frequency)
        run.advance(PipelineState.RETRIEVING)
        context = await self._assembler.gather(target)
        run.knowledge_count = len(context.knowledge)
        self._log_context(run, context)
        return target, context

    def _set_active(self, delta: int) -> None:
        self._active += delta
        metrics.set("answer_stream_active", value=self._active)

    def _record_failure(self, run: AnswerRun, exc: AnswerError) -> None:
        run.fail(exc)
        metrics.inc("answer_error_total", {"code": exc.code})
        logger.warning(
            "answer run failed trace_id=%s request_id=%s message=%s code=%s: %s",
            run.trace_id,
            run.request_id,
            run.message_id,
            exc.code,
            exc.message,
        )

    async def stream(self, run: AnswerRun) -> AsyncIterator[str]:
        """Yield the framed event stream for ``run``."""
        events = EventStream()
        started = time.perf_counter()
        self._set_active(1)
        try:
            target, context = await self._prepare(run)

            run.advance(PipelineState.STREAMING)
            state = self._new_stream_state()
            backend = self._backend_factory(context.binding)
            fragments = backend.generate(context.question, context.history, target.store.prompt, context.knowledge)
            async with aclosing(with_deadline(fragments, self._settings.llm_timeout_ms / 1000.0)) as bounded:
                async for fragment in bounded:
                    chunk = state.write(fragment)
                    if chunk:
                        yield events.message(chunk)
            tail = state.finish()
            if tail:
                yield events.message(tail)

            run.answer = state.answer
            if not run.answer:
                raise CollaboratorFailure("the model returned an empty answer")
            yield events.end()

            run.advance(PipelineState.FINALIZING)
            await finalize_answer(self.storage, target.message, run.answer, context.vector_scores)
            run.advance(PipelineState.DONE)
            metrics.inc("answer_stream_total", {"result": "ok"})
        except (asyncio.CancelledError, GeneratorExit):
            metrics.inc("answer_stream_disconnect_total")
            logger.info("answer run %s: client disconnected during %s", run.request_id, run.state.value)
            run.fail(StreamWriteFailure("the client disconnected"))
            raise
        except AnswerError as exc:
            self._record_failure(run, exc)
            metrics.inc("answer_stream_total", {"result": "error"})
            payload = events.error(exc)
            if payload:
                yield payload
        except Exception as exc:
            logger.exception("answer run %s crashed", run.request_id)
            failure = CollaboratorFailure(str(exc) or exc.__class__.__name__)
            self._record_failure(run, failure)
            metrics.inc("answer_stream_total", {"result": "error"})
            payload = events.error(failure)
            if payload:
                yield payload
        finally:
            self._set_active(-1)
            took_ms = int((time.perf_counter() - started) * 1000)
            metrics.inc("answer_stream_latency_ms", value=max(0, took_ms))
            audit_answer(
                self._settings.audit_log_path,
                trace_id=run.trace_id,
                request_id=run.request_id,
                message_id=run.message_id,
                status=run.state.value,
                code=run.error.code if run.error else None,
                answer_chars=len(run.answer),
                knowledge_count=run.knowledge_count,
                took_ms=took_ms,
            )


def build_pipeline(settings: Settings) -> AnswerPipeline:
    return AnswerPipeline(storage=build_storage(settings), retriever=build_retriever(settings), settings=settings)
