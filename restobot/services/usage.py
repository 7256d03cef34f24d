from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class TTLStore(Protocol):
    """Counter store whose keys disappear at their expiry time."""

    def get(self, key: str) -> int:  # pragma: no cover - interface
        ...

    def increment(self, key: str, expires_at: datetime) -> int:  # pragma: no cover - interface
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryTTLStore:
    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._values: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> int:
        with self._lock:
            return self._live(key)

    def increment(self, key: str, expires_at: datetime) -> int:
        with self._lock:
            value = self._live(key) + 1
            current = self._values.get(key)
            self._values[key] = (value, current[1] if current and value > 1 else expires_at)
            return value

    def _live(self, key: str) -> int:
        entry = self._values.get(key)
        if entry is None:
            return 0
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return 0
        return value


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    user_count: int = 0
    ip_count: int = 0
    reason: Optional[str] = None


class UsageMeter:
    """Daily call budget per user and per client IP for the assistant endpoint.

    Counters are keyed by UTC date and expire at the next UTC midnight.
    """

    def __init__(
        self,
        store: TTLStore,
        daily_limit: int = 5,
        ip_limit: int = 10,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._daily_limit = daily_limit
        self._ip_limit = ip_limit
        self._enabled = enabled
        self._clock = clock or _utcnow
        self._lock = threading.Lock()

    def check_and_record(self, user_id: str, ip: Optional[str] = None) -> UsageDecision:
        if not self._enabled:
            return UsageDecision(allowed=True)

        now = self._clock()
        day = now.date().isoformat()
        expires_at = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)
        user_key = f"{user_id}_{day}"
        ip_key = f"ip_{ip}_{day}" if ip else None

        with self._lock:
            user_count = self._store.get(user_key)
            ip_count = self._store.get(ip_key) if ip_key else 0
            if user_count >= self._daily_limit:
                logger.info("Daily assistant limit reached for user %s", user_id)
                return UsageDecision(False, user_count, ip_count, "user_limit")
            if ip_key and ip_count >= self._ip_limit:
                logger.info("Daily assistant limit reached for ip %s", ip)
                return UsageDecision(False, user_count, ip_count, "ip_limit")
            user_count = self._store.increment(user_key, expires_at)
            if ip_key:
                ip_count = self._store.increment(ip_key, expires_at)
        return UsageDecision(True, user_count, ip_count)
