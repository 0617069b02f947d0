from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ChatType(str, Enum):
    AI = "AI"
    SINGLE = "Single"
    GROUP = "Group"


class MessageAuthor(str, Enum):
    AI = "AI"


class ReplyKind(Enum):
    NONE = "none"
    WELCOME = "welcome"
    MESSAGE = "message"


WELCOME_REPLY = "Welcome"


def get_id(owner: str, name: str) -> str:
    return f"{owner}/{name}"


def split_id(value: str) -> tuple[str, str]:
    owner, sep, name = str(value or "").partition("/")
    if not sep:
        return "", owner
    return owner, name


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_time(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class VectorScore:
    vector: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"vector": self.vector, "score": self.score}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "VectorScore":
        return cls(vector=str(raw.get("vector") or ""), score=float(raw.get("score") or 0.0))


@dataclass
class Knowledge:
    text: str
    score: float
    vector: str = ""

    def provenance(self) -> VectorScore:
        return VectorScore(vector=self.vector, score=self.score)


@dataclass
class Message:
    owner: str
    name: str
    created_time: str = ""
    user: str = ""
    chat: str = ""
    author: str = ""
    reply_to: str = ""
    text: str = ""
    vector_scores: List[VectorScore] = field(default_factory=list)

    @property
    def id(self) -> str:
        return get_id(self.owner, self.name)

    @property
    def is_ai_authored(self) -> bool:
        return self.author == MessageAuthor.AI.value

    @property
    def reply_kind(self) -> ReplyKind:
        if not self.reply_to:
            return ReplyKind.NONE
        if self.reply_to == WELCOME_REPLY:
            return ReplyKind.WELCOME
        return ReplyKind.MESSAGE

    def is_pending_answer(self) -> bool:
        return self.is_ai_authored and self.reply_kind is not ReplyKind.NONE and self.text == ""


@dataclass
class Chat:
    owner: str
    name: str
    type: str = ""
    user: str = ""
    user2: str = ""

    @property
    def id(self) -> str:
        return get_id(self.owner, self.name)

    @property
    def is_ai(self) -> bool:
        return self.type == ChatType.AI.value


@dataclass
class StoreConfig:
    owner: str
    name: str
    welcome: str = ""
    prompt: str = ""
    memory_limit: int = 5
    limit_minutes: int = 15
    frequency: int = 10
