from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sessionguard.logging import get_logger
from sessionguard.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class _Raise:
    """Sentinel: no fail-open default was supplied, so failures raise."""

    def __repr__(self) -> str:
        return "RAISE"


RAISE: Any = _Raise()

# Commands accepted inside a pipeline batch
PIPELINE_COMMANDS = frozenset({"get", "set", "delete", "expire", "incr", "sadd", "srem"})

_TRANSPORT_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def _key_family(key: str) -> str:
    # Keys may embed bearer material (refresh_token:<jwt>); log only the prefix
    return key.split(":", 1)[0]


class KeyValueStore:
    """Thin async Redis wrapper for sessions, refresh tokens and lockouts.

    Owns no business rules. Every operation takes an optional ``default``:
    when given, a transport failure is logged and the default is returned
    (fail-open); when omitted, ``StoreUnavailableError`` is raised.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.client = client
        self.operation_timeout = operation_timeout
        self._ready: Optional[bool] = None

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        *,
        connect_timeout: float = 10.0,
        command_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> "KeyValueStore":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=command_timeout,
            socket_connect_timeout=connect_timeout,
        )
        return cls(client, operation_timeout=command_timeout)

    async def _call(
        self,
        op: str,
        key: str,
        action: Callable[[], Awaitable[Any]],
        default: Any,
    ) -> Any:
        try:
            result = await asyncio.wait_for(action(), timeout=self.operation_timeout)
        except _TRANSPORT_ERRORS as exc:
            if self._ready is not False:
                logger.error("kv_connection_lost", op=op, error=str(exc))
            self._ready = False
            if default is RAISE:
                raise StoreUnavailableError(op, exc) from exc
            logger.warning(
                "kv_op_failed_using_fallback",
                op=op,
                key_family=_key_family(key),
                error=str(exc),
            )
            return default
        if self._ready is not True:
            logger.info("kv_connection_ready")
        self._ready = True
        return result

    # readiness

    def is_ready(self) -> bool:
        """Last observed connection state; False until a call has succeeded."""
        return bool(self._ready)

    async def ensure_connection(self) -> bool:
        """Ping the store, reconnecting if needed. Never raises."""
        if self._ready:
            return True
        return bool(await self._call("ping", "", self.client.ping, False))

    async def close(self) -> None:
        await self.client.aclose()

    # single-key operations

    async def get(self, key: str, *, default: Any = RAISE) -> Optional[str]:
        return await self._call("get", key, lambda: self.client.get(key), default)

    async def set_with_ttl(
        self, key: str, value: str, ttl_seconds: int, *, default: Any = RAISE
    ) -> bool:
        return await self._call(
            "set",
            key,
            lambda: self.client.set(key, value, ex=ttl_seconds),
            default,
        )

    async def delete(self, *keys: str, default: Any = RAISE) -> int:
        if not keys:
            return 0
        return await self._call(
            "delete", keys[0], lambda: self.client.delete(*keys), default
        )

    async def increment(self, key: str, *, default: Any = RAISE) -> int:
        """Atomically increment; a missing key is created at 1."""
        return await self._call("incr", key, lambda: self.client.incr(key), default)

    async def expire(self, key: str, ttl_seconds: int, *, default: Any = RAISE) -> bool:
        return await self._call(
            "expire", key, lambda: self.client.expire(key, ttl_seconds), default
        )

    async def ttl(self, key: str, *, default: Any = RAISE) -> int:
        """Remaining TTL in seconds; -2 when absent, -1 when the key has none."""
        return await self._call("ttl", key, lambda: self.client.ttl(key), default)

    # set operations

    async def add_to_set(self, key: str, member: str, *, default: Any = RAISE) -> int:
        return await self._call(
            "sadd", key, lambda: self.client.sadd(key, member), default
        )

    async def members_of(self, key: str, *, default: Any = RAISE) -> Set[str]:
        result = await self._call(
            "smembers", key, lambda: self.client.smembers(key), default
        )
        return set(result) if result is not None else set()

    async def remove_from_set(
        self, key: str, member: str, *, default: Any = RAISE
    ) -> int:
        return await self._call(
            "srem", key, lambda: self.client.srem(key, member), default
        )

    # batches

    async def pipeline(
        self, ops: Iterable[Sequence[Any]], *, default: Any = RAISE
    ) -> list[Any]:
        """Run ``(command, *args)`` tuples in one round trip.

        No cross-op atomicity: the batch is sent non-transactionally.
        ``("set", key, value, ttl)`` maps to SET with EX.
        """
        batch = [tuple(op) for op in ops]
        for op in batch:
            if not op or op[0] not in PIPELINE_COMMANDS:
                raise ValueError(f"unsupported pipeline command: {op[:1]}")
        if not batch:
            return []

        async def _execute() -> list[Any]:
            pipe = self.client.pipeline(transaction=False)
            for command, *args in batch:
                if command == "set":
                    key, value, *rest = args
                    pipe.set(key, value, ex=rest[0] if rest else None)
                else:
                    getattr(pipe, command)(*args)
            return await pipe.execute()

        return await self._call("pipeline", batch[0][1], _execute, default)


__all__ = ["KeyValueStore", "RAISE", "PIPELINE_COMMANDS"]
