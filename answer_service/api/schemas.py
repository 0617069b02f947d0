from typing import List, Optional

from pydantic import BaseModel, Field


class VectorScorePayload(BaseModel):
    vector: str = ""
    score: float = 0.0


class MessagePayload(BaseModel):
    owner: str
    name: str = ""
    user: str = ""
    chat: str = ""
    author: str = ""
    reply_to: str = Field(default="", alias="reply_to")
    text: str = ""
    vector_scores: List[VectorScorePayload] = Field(default_factory=list, alias="vector_scores")


class AddMessageResponse(BaseModel):
    status: str = "ok"
    success: bool
    answer_id: Optional[str] = Field(default=None, alias="answer_id")
