from __future__ import annotations

import json

from answer_service.core.errors import AnswerError

STREAM_HEADERS = {
    "cache-control": "no-cache",
    "connection": "keep-alive",
}
STREAM_MEDIA_TYPE = "text/event-stream"


def sse_event(name: str, data: dict | str) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"event: {name}\ndata: {payload}\n\n"


class EventStream:
    """Frames pipeline output and enforces the event ordering rules.

    ``message`` events are only legal before ``end``; ``end`` is sent at most
    once; ``error`` is sent at most once and nothing follows it.
    """

    def __init__(self) -> None:
        self.ended = False
        self.errored = False

    def message(self, text: str) -> str:
        if self.ended or self.errored:
            raise RuntimeError("message event after stream termination")
        return sse_event("message", json.dumps(text, ensure_ascii=False))

    def end(self) -> str:
        if self.ended or self.errored:
            raise RuntimeError("end event already sent or stream errored")
        self.ended = True
        return sse_event("end", "end")

    def error(self, exc: AnswerError) -> str | None:
        if self.errored:
            return None
        self.errored = True
        return sse_event("error", exc.to_payload())
