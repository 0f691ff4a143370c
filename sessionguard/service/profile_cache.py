from __future__ import annotations

import json
from typing import Any, Dict, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.kv import KeyValueStore

logger = get_logger(__name__)


class ProfileCache:
    """Read-through cache of public user profiles. Best effort in both directions."""

    def __init__(self, kv: KeyValueStore, *, ttl_seconds: int = 900) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(user_id: str) -> str:
        return f"user_profile:{user_id}"

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.kv.get(self._key(user_id), default=None)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("profile_cache_corrupt", user_id=user_id)
            return None

    async def put(self, user_id: str, profile: Dict[str, Any]) -> None:
        await self.kv.set_with_ttl(
            self._key(user_id), json.dumps(profile), self.ttl_seconds, default=False
        )

    async def invalidate(self, user_id: str) -> None:
        await self.kv.delete(self._key(user_id), default=0)
