import logging
from datetime import datetime
from typing import Callable, Optional

from fitter.core.dates import utc_now
from fitter.core.errors import InvalidTransition
from fitter.db.models import Suggestion
from fitter.db.store import ActivityStore

logger = logging.getLogger("fitter.lifecycle")

TERMINAL_STATUSES = {"completed", "dismissed"}
TIMESTAMP_FOR_STATUS = {"completed": "completed_at", "dismissed": "dismissed_at"}


class SuggestionLifecycleManager:
    """active -> completed | dismissed. Terminal states never change again."""

    def __init__(self, store: ActivityStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def expire_stale(self) -> int:
        now = self.clock()
        count = self.store.bulk_update_suggestion_status(
            status="dismissed",
            timestamp_field="dismissed_at",
            now=now,
            current_status="active",
            expires_before=now,
        )
        logger.info("expired_suggestions count=%s", count)
        return count

    def _transition(self, user_id: int, suggestion_id: int, target: str) -> Optional[Suggestion]:
        row = self.store.get_suggestion(user_id, suggestion_id)
        if row is None:
            return None
        if row.status in TERMINAL_STATUSES:
            raise InvalidTransition(suggestion_id, row.status, target)
        return self.store.set_suggestion_status(row, target, TIMESTAMP_FOR_STATUS[target], self.clock())

    def complete(self, user_id: int, suggestion_id: int) -> Optional[Suggestion]:
        return self._transition(user_id, suggestion_id, "completed")

    def dismiss(self, user_id: int, suggestion_id: int) -> Optional[Suggestion]:
        return self._transition(user_id, suggestion_id, "dismissed")
