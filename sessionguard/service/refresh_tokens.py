from __future__ import annotations

from typing import Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.kv import KeyValueStore
from sessionguard.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)


class RefreshTokenStore:
    """Refresh-token records plus a per-user index set of outstanding tokens.

    A token record may outlive its session; callers must verify the session
    still exists before honouring a token.
    """

    def __init__(self, kv: KeyValueStore, *, ttl_seconds: int = 604800) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _token_key(token: str) -> str:
        return f"refresh_token:{token}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"user_refresh_tokens:{user_id}"

    async def store(self, token: str, user_id: str, session_id: str) -> RefreshTokenRecord:
        """Write the record and index it; re-arms the index TTL. Raises when unreachable."""
        record = RefreshTokenRecord(
            user_id=user_id, session_id=session_id, created_at=utcnow().isoformat()
        )
        index_key = self._index_key(user_id)
        await self.kv.pipeline(
            [
                ("set", self._token_key(token), record.to_json(), self.ttl_seconds),
                ("sadd", index_key, token),
                ("expire", index_key, self.ttl_seconds),
            ]
        )
        return record

    async def get(self, token: str) -> Optional[RefreshTokenRecord]:
        raw = await self.kv.get(self._token_key(token), default=None)
        if not raw:
            return None
        try:
            return RefreshTokenRecord.from_json(raw)
        except (ValueError, KeyError) as exc:
            logger.warning("refresh_token_record_corrupt", error=str(exc))
            return None

    async def delete(self, token: str) -> bool:
        record = await self.get(token)
        ops = [("delete", self._token_key(token))]
        if record:
            ops.append(("srem", self._index_key(record.user_id), token))
        results = await self.kv.pipeline(ops, default=None)
        return bool(results and results[0])

    async def delete_all_for_user(self, user_id: str) -> int:
        """Revoke every indexed token for the user in one batch; returns the count."""
        index_key = self._index_key(user_id)
        try:
            tokens = await self.kv.members_of(index_key)
            ops = [("delete", self._token_key(token)) for token in sorted(tokens)]
            ops.append(("delete", index_key))
            await self.kv.pipeline(ops)
        except StoreUnavailableError as exc:
            logger.warning("refresh_token_revoke_failed", user_id=user_id, error=str(exc))
            return 0
        if tokens:
            logger.info("refresh_tokens_revoked", user_id=user_id, count=len(tokens))
        return len(tokens)


__all__ = ["RefreshTokenStore"]
