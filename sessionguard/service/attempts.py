from __future__ import annotations

from sessionguard.logging import get_logger, hash_identifier
from sessionguard.storage.kv import KeyValueStore

logger = get_logger(__name__)


class FailedAttemptTracker:
    """Per-identifier failed-login counter and lock flag.

    Counter and lock are independent keys, both TTL'd to the lockout window.
    Reads fail open: a store outage never blocks a login attempt. The
    threshold itself is enforced by the caller.
    """

    def __init__(self, kv: KeyValueStore, *, lockout_seconds: int = 900) -> None:
        self.kv = kv
        self.lockout_seconds = lockout_seconds

    @staticmethod
    def identifier(email: str, source_ip: str | None) -> str:
        return f"{email.strip().lower()}:{source_ip or 'unknown'}"

    @staticmethod
    def _counter_key(identifier: str) -> str:
        return f"failed_attempts:{identifier}"

    @staticmethod
    def _lock_key(identifier: str) -> str:
        return f"account_lock:{identifier}"

    async def record_failure(self, identifier: str) -> int:
        """Increment the counter and re-arm its TTL from this failure."""
        key = self._counter_key(identifier)
        results = await self.kv.pipeline(
            [("incr", key), ("expire", key, self.lockout_seconds)], default=None
        )
        if not results:
            return 1
        attempts = int(results[0])
        logger.info(
            "login_failure_recorded",
            identifier_hash=hash_identifier(identifier),
            attempts=attempts,
        )
        return attempts

    async def attempt_count(self, identifier: str) -> int:
        raw = await self.kv.get(self._counter_key(identifier), default=None)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def clear(self, identifier: str) -> None:
        await self.kv.delete(self._counter_key(identifier), default=0)

    async def lock(self, identifier: str) -> None:
        await self.kv.set_with_ttl(
            self._lock_key(identifier), "locked", self.lockout_seconds, default=False
        )
        logger.warning(
            "account_locked",
            identifier_hash=hash_identifier(identifier),
            lockout_seconds=self.lockout_seconds,
        )

    async def is_locked(self, identifier: str) -> bool:
        return bool(await self.kv.get(self._lock_key(identifier), default=None))

    async def retry_after(self, identifier: str) -> int:
        """Seconds until the lock lapses; the full window when unknown."""
        remaining = await self.kv.ttl(self._lock_key(identifier), default=-2)
        return remaining if remaining and remaining > 0 else self.lockout_seconds
