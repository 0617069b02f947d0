import logging

from answer_service.core.errors import QuotaExceeded
from answer_service.core.metrics import metrics
from answer_service.core.storage import MessageStore, run_storage

logger = logging.getLogger(__name__)

QUOTA_MESSAGE = "You have queried too many times, please wait for a while"


class QuotaGate:
    """Sliding-window quota for callers without an authenticated session."""

    def __init__(self, store: MessageStore) -> None:
        self._store = store

    async def admit(self, user_id: str, limit_minutes: int, frequency: int) -> int:
        """Return the observed count, or raise ``QuotaExceeded`` when ``count > frequency``."""
        count = await run_storage(self._store.count_since, user_id, limit_minutes)
        if count > frequency:
            metrics.inc("answer_quota_denied_total")
            logger.info("quota denied user=%s count=%s frequency=%s window=%sm", user_id, count, frequency, limit_minutes)
            raise QuotaExceeded(QUOTA_MESSAGE)
        return count
