import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from answer_service.api.schemas import AddMessageResponse, MessagePayload
from answer_service.core.errors import AnswerError, NotFound
from answer_service.core.messages import add_message
from answer_service.core.metrics import metrics
from answer_service.core.models import Message, VectorScore
from answer_service.core.pipeline import AnswerRun, build_pipeline
from answer_service.core.settings import SETTINGS
from answer_service.core.sse import STREAM_HEADERS, STREAM_MEDIA_TYPE

router = APIRouter()
logger = logging.getLogger(__name__)
pipeline = build_pipeline(SETTINGS)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.get("/api/get-message-answer")
async def get_message_answer(request: Request, id: str = Query(default="")):
    trace_id, request_id = _extract_ids(request)
    run = AnswerRun(
        message_id=id,
        session_user=_session_user(request),
        trace_id=trace_id,
        request_id=request_id,
    )
    headers = {**STREAM_HEADERS, **_response_headers(trace_id, request_id)}
    return StreamingResponse(pipeline.stream(run), media_type=STREAM_MEDIA_TYPE, headers=headers)


@router.post("/api/add-message", response_model=AddMessageResponse)
async def add_message_route(payload: MessagePayload, request: Request):
    trace_id, request_id = _extract_ids(request)
    message = Message(
        owner=payload.owner,
        name=payload.name,
        user=payload.user,
        chat=payload.chat,
        author=payload.author,
        reply_to=payload.reply_to,
        text=payload.text,
        vector_scores=[VectorScore(vector=item.vector, score=item.score) for item in payload.vector_scores],
    )
    try:
        success, placeholder = await add_message(pipeline.storage, message)
    except AnswerError as exc:
        status = 404 if isinstance(exc, NotFound) else 400
        return _error_response(exc, trace_id, request_id, status_code=status)
    return JSONResponse(
        content=AddMessageResponse(success=success, answer_id=placeholder.id if placeholder else None).model_dump(),
        headers=_response_headers(trace_id, request_id),
    )


def _session_user(request: Request) -> Optional[str]:
    user_id = request.headers.get("x-user-id")
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return None


def _extract_ids(request: Request) -> tuple[str, str]:
    trace_id = request.headers.get("x-trace-id")
    request_id = request.headers.get("x-request-id")
    if not trace_id:
        trace_id = f"trace_{uuid.uuid4().hex}"
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return trace_id, request_id


def _error_response(exc: AnswerError, trace_id: str, request_id: str, status_code: int = 400) -> JSONResponse:
    payload = {
        "error": exc.to_payload(),
        "trace_id": trace_id,
        "request_id": request_id,
    }
    return JSONResponse(status_code=status_code, content=payload, headers=_response_headers(trace_id, request_id))


def _response_headers(trace_id: str, request_id: str) -> dict[str, str]:
    return {"x-trace-id": trace_id, "x-request-id": request_id}
