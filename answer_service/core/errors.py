"""Error kinds surfaced by the answer pipeline.

Every kind terminates the request and is framed as a single ``error``
event carrying ``code`` and ``message``.
"""


class AnswerError(Exception):
    code = "answer_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFound(AnswerError):
    code = "not_found"


class InvalidInput(AnswerError):
    code = "invalid_input"


class InvalidState(AnswerError):
    code = "invalid_state"


class QuotaExceeded(AnswerError):
    code = "quota_exceeded"


class CollaboratorFailure(AnswerError):
    code = "collaborator_failure"


class StreamWriteFailure(AnswerError):
    code = "stream_write_failure"


class AnswerTimeout(AnswerError):
    code = "timeout"
