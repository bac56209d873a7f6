"""Per-user daily message quota."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping

from .entities import utc_now
from .errors import RateLimited
from .store import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_LIMITS: Dict[str, int] = {"guest": 20, "regular": 100}


class QuotaGuard:
    """Rolling-window ceiling on user turns, checked before a turn is admitted.

    The check is read-then-decide: two admissions racing for the same user may
    both pass, overshooting the ceiling by at most the number of racers. The
    ceiling is a fairness control, so no reservation is taken.
    """

    def __init__(
        self,
        store: ConversationStore,
        limits: Mapping[str, int] = DEFAULT_LIMITS,
        *,
        window_hours: float = 24,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.limits = {str(k): int(v) for k, v in (limits or DEFAULT_LIMITS).items()}
        self.window = timedelta(hours=float(window_hours))
        self._clock = clock

    def limit_for(self, user_type: str) -> int:
        if user_type in self.limits:
            return self.limits[user_type]
        return self.limits.get("guest", min(self.limits.values(), default=0))

    async def usage(self, user_id: str) -> int:
        return await self.store.count_user_messages(user_id, self._clock() - self.window)

    async def check_and_admit(self, user_id: str, user_type: str) -> int:
        """Return the pre-admission count, or raise :class:`RateLimited`."""
        count = await self.usage(user_id)
        ceiling = self.limit_for(user_type)
        if count >= ceiling:
            logger.info("Quota exceeded for user %s (%s): %d/%d", user_id, user_type, count, ceiling)
            raise RateLimited()
        return count


def build_quota_guard(cfg: Dict, store: ConversationStore, *, clock: Callable[[], datetime] = utc_now) -> QuotaGuard:
    q = cfg.get("quota", {}) or {}
    return QuotaGuard(
        store,
        q.get("max_messages_per_day") or DEFAULT_LIMITS,
        window_hours=float(q.get("window_hours", 24)),
        clock=clock,
    )
