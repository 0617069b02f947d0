import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def append_audit(path: str, payload: Dict[str, Any]) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    entry = {"timestamp": now_iso(), **payload}
    with target.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, ensure_ascii=False) + "\n")


def audit_answer(
    path: str,
    *,
    trace_id: str,
    request_id: str,
    message_id: str,
    status: str,
    code: Optional[str],
    answer_chars: int,
    knowledge_count: int,
    took_ms: int,
) -> None:
    if not path:
        return
    payload: Dict[str, Any] = {
        "trace_id": trace_id,
        "request_id": request_id,
        "message_id": message_id,
        "status": status,
        "answer_chars": answer_chars,
        "knowledge_count": knowledge_count,
        "took_ms": took_ms,
    }
    if code:
        payload["code"] = code
    try:
        append_audit(path, payload)
    except Exception as exc:
        logger.warning("Failed to append answer audit log: %s", exc)
