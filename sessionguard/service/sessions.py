from __future__ import annotations

import time
from typing import Any, Dict, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.kv import KeyValueStore
from sessionguard.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)


class SessionStore:
    """Session records keyed by session ID plus the user -> active session pointer.

    The pointer, not record existence, decides which session is the user's
    active one: a record is reachable only while ``active_session:<user>``
    names it. The pointer carries the session TTL and slides with it.

    Every operation fails open by default. ``create(fail_open=False)`` raises
    ``StoreUnavailableError`` instead, for callers that must not hand out
    credentials without a backing session.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = 300,
        refresh_throttle_seconds: int = 30,
    ) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self.refresh_throttle_seconds = refresh_throttle_seconds

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _pointer_key(user_id: str) -> str:
        return f"active_session:{user_id}"

    @staticmethod
    def _refresh_marker_key(session_id: str) -> str:
        return f"session_refresh:{session_id}"

    @staticmethod
    def _decode(session_id: str, raw: Optional[str]) -> Optional[SessionRecord]:
        if not raw:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def create(
        self,
        user_id: str,
        session_id: str,
        user_fields: Optional[Dict[str, Any]] = None,
        *,
        fail_open: bool = True,
    ) -> SessionRecord:
        fields = user_fields or {}
        record = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            created_at=utcnow().isoformat(),
            email=fields.get("email"),
            first_name=fields.get("first_name"),
            last_name=fields.get("last_name"),
        )
        # Record first, pointer second; both in one round trip
        ops = [
            ("set", self._session_key(session_id), record.to_json(), self.ttl_seconds),
            ("set", self._pointer_key(user_id), session_id, self.ttl_seconds),
        ]
        if fail_open:
            written = await self.kv.pipeline(ops, default=None)
            if written is None:
                logger.warning("session_create_not_persisted", user_id=user_id)
        else:
            await self.kv.pipeline(ops)
        logger.info("session_created", user_id=user_id, session_id=session_id)
        return record

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.kv.get(self._session_key(session_id), default=None)
        return self._decode(session_id, raw)

    async def active_session_id(self, user_id: str) -> Optional[str]:
        return await self.kv.get(self._pointer_key(user_id), default=None)

    async def get_active(self, user_id: str) -> Optional[SessionRecord]:
        """Resolve the user's active session through the pointer."""
        session_id = await self.active_session_id(user_id)
        if not session_id:
            return None
        record = await self.get(session_id)
        if record and record.user_id != user_id:
            return None
        return record

    async def resolve(self, session_id: str, user_id: str) -> Optional[SessionRecord]:
        """Return the record only if it exists, belongs to ``user_id`` and is pointed to."""
        results = await self.kv.pipeline(
            [("get", self._session_key(session_id)), ("get", self._pointer_key(user_id))],
            default=None,
        )
        if not results:
            return None
        record = self._decode(session_id, results[0])
        if not record or record.user_id != user_id:
            return None
        if results[1] != session_id:
            logger.info(
                "session_superseded",
                session_id=session_id,
                user_id=user_id,
            )
            return None
        return record

    async def refresh(self, session_id: str, force: bool = False) -> bool:
        """Slide the session TTL, at most once per throttle window unless forced."""
        try:
            if not force:
                marker_key = self._refresh_marker_key(session_id)
                last_refresh = await self.kv.get(marker_key)
                now_ms = int(time.time() * 1000)
                if last_refresh:
                    try:
                        elapsed_ms = now_ms - int(last_refresh)
                    except ValueError:
                        elapsed_ms = self.refresh_throttle_seconds * 1000
                    if elapsed_ms < self.refresh_throttle_seconds * 1000:
                        return True
                await self.kv.set_with_ttl(
                    marker_key, str(now_ms), self.refresh_throttle_seconds
                )
            record = self._decode(
                session_id, await self.kv.get(self._session_key(session_id))
            )
            if not record:
                return False
            pointer = await self.kv.get(self._pointer_key(record.user_id))
            ops = [("expire", self._session_key(session_id), self.ttl_seconds)]
            # only the pointed-to session slides the pointer
            if pointer == session_id:
                ops.append(("expire", self._pointer_key(record.user_id), self.ttl_seconds))
            results = await self.kv.pipeline(ops)
        except StoreUnavailableError as exc:
            logger.warning("session_refresh_failed", session_id=session_id, error=str(exc))
            return False
        return bool(results[0])

    async def time_left(self, session_id: str) -> int:
        remaining = await self.kv.ttl(self._session_key(session_id), default=-2)
        return max(0, remaining)

    async def delete(self, session_id: str) -> bool:
        """Delete one session; the pointer goes too if it still names it."""
        try:
            record = self._decode(
                session_id, await self.kv.get(self._session_key(session_id))
            )
            if not record:
                return False
            ops = [
                ("delete", self._session_key(session_id)),
                ("delete", self._refresh_marker_key(session_id)),
            ]
            pointer = await self.kv.get(self._pointer_key(record.user_id))
            if pointer == session_id:
                ops.append(("delete", self._pointer_key(record.user_id)))
            await self.kv.pipeline(ops)
        except StoreUnavailableError as exc:
            logger.warning("session_delete_failed", session_id=session_id, error=str(exc))
            return False
        logger.info("session_deleted", session_id=session_id, user_id=record.user_id)
        return True

    async def delete_all_for_user(self, user_id: str) -> Optional[str]:
        """Evict the pointed-to session and the pointer.

        Returns the evicted session ID, or None when there was nothing to
        evict or the store was unreachable.
        """
        try:
            session_id = await self.kv.get(self._pointer_key(user_id))
            ops = [("delete", self._pointer_key(user_id))]
            if session_id:
                ops[:0] = [
                    ("delete", self._session_key(session_id)),
                    ("delete", self._refresh_marker_key(session_id)),
                ]
            await self.kv.pipeline(ops)
        except StoreUnavailableError as exc:
            logger.warning("session_evict_failed", user_id=user_id, error=str(exc))
            return None
        if session_id:
            logger.info("session_evicted", user_id=user_id, session_id=session_id)
        return session_id


__all__ = ["SessionStore"]
