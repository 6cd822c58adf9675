"""
Counter store: TTL-aware key/value access used by the anomaly engine.

Keys are tuples of strings, e.g. ("counts", project_id, event_name, bucket).
Values are anything JSON can carry. Two backends:

  - RedisCounterStore: production, shared by every worker process
  - MemoryCounterStore: single process, for tests and local runs
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import quote, unquote

from redis.exceptions import RedisError

from . import config
from .errors import StoreUnavailable

logger = logging.getLogger("anomalisa.store")

Key = Tuple[str, ...]
T = TypeVar("T")


class CounterStore(abc.ABC):

    @abc.abstractmethod
    async def increment(self, key: Key, ttl: int) -> int:
        """Atomically add one (creating at 1) and refresh the TTL. Returns the new value."""

    @abc.abstractmethod
    async def get_or_init(self, key: Key, initializer: Callable[[], Any]) -> Any:
        """Existing value, or store and return `initializer()` if the key is absent."""

    @abc.abstractmethod
    async def set_if_greater(
        self,
        key: Key,
        candidate: int,
        ttl: int,
        *,
        holder_key: Optional[Key] = None,
        holder: Any = None,
    ) -> bool:
        """
        Store `candidate` only if it beats the current value (absent counts as 0).

        With `holder_key`, `holder` is written there in the same atomic step,
        so the pair always names whoever set the current value.
        """

    @abc.abstractmethod
    async def put(self, key: Key, value: Any, ttl: Optional[int] = None) -> None:
        ...

    @abc.abstractmethod
    async def get(self, key: Key) -> Any:
        ...

    @abc.abstractmethod
    async def list_by_prefix(self, prefix: Key) -> List[Tuple[Key, Any]]:
        """All live (key, value) pairs under `prefix`, in key order."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

_SET_IF_GREATER = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local candidate = tonumber(ARGV[1])
if candidate > current then
  redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
  if KEYS[2] then
    redis.call('SET', KEYS[2], ARGV[3], 'EX', ARGV[2])
  end
  return 1
end
return 0
"""

# members of one (kind, project) index, scored by expiry time
INDEX_DEPTH = 2
SCAN_COUNT = 500
MGET_CHUNK = 500


def _rstr(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, (bytes, bytearray)):
        return v.decode("utf-8", errors="replace")
    return str(v)


class RedisCounterStore(CounterStore):
    """
    Redis backend. Every key segment is percent-encoded, so ':' inside an
    event name cannot collide with the separator and glob characters are
    inert in SCAN patterns.

    Each write also records its key in a sorted-set index for the key's first
    two segments (e.g. ("counts", project_id)), scored by expiry time. Prefix
    listing reads that index instead of scanning the keyspace; expired members
    are pruned on read. The index TTL follows the latest write into it.
    """

    def __init__(
        self,
        redis_client,
        *,
        namespace: str = "anomalisa",
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.namespace = namespace
        self.timeout = timeout
        self._clock = clock
        self._set_if_greater = redis_client.register_script(_SET_IF_GREATER)

    def _key(self, key: Key) -> str:
        return ":".join([self.namespace, *(quote(str(p), safe="") for p in key)])

    def _parse_key(self, raw: str) -> Key:
        rest = raw[len(self.namespace) + 1:]
        return tuple(unquote(p) for p in rest.split(":"))

    def _index_key(self, key: Key) -> str:
        # '~' is never produced by quote(), so index names cannot clash with data keys
        return ":".join([f"{self.namespace}~idx", *(quote(str(p), safe="") for p in key[:INDEX_DEPTH])])

    def _index(self, pipe, key: Key, ttl: Optional[int]) -> None:
        """Queue the index update for `key` on `pipe`."""
        idx = self._index_key(key)
        score = self._clock() + ttl if ttl is not None else float("inf")
        pipe.zadd(idx, {self._key(key): score})
        if ttl is not None:
            pipe.expire(idx, ttl)
        else:
            pipe.persist(idx)

    async def _call(self, op: str, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"redis {op} timed out after {self.timeout}s") from e
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"redis {op} failed: {e!r}") from e

    async def increment(self, key: Key, ttl: int) -> int:
        k = self._key(key)

        async def _incr() -> int:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(k)
                pipe.expire(k, ttl)
                self._index(pipe, key, ttl)
                results = await pipe.execute()
            return int(results[0])

        return await self._call("increment", _incr())

    async def get_or_init(self, key: Key, initializer: Callable[[], Any]) -> Any:
        k = self._key(key)

        async def _get_or_init() -> Any:
            raw = _rstr(await self.redis.get(k))
            if raw is not None:
                return json.loads(raw)
            initial = initializer()
            created = await self.redis.set(k, json.dumps(initial), nx=True)
            if created:
                async with self.redis.pipeline(transaction=False) as pipe:
                    self._index(pipe, key, None)
                    await pipe.execute()
                return initial
            # lost the race to another writer, use theirs
            raw = _rstr(await self.redis.get(k))
            return json.loads(raw) if raw is not None else initial

        return await self._call("get_or_init", _get_or_init())

    async def set_if_greater(
        self,
        key: Key,
        candidate: int,
        ttl: int,
        *,
        holder_key: Optional[Key] = None,
        holder: Any = None,
    ) -> bool:
        keys = [self._key(key)]
        args = [int(candidate), int(ttl)]
        if holder_key is not None:
            keys.append(self._key(holder_key))
            args.append(json.dumps(holder))

        async def _raise() -> bool:
            updated = bool(int(await self._set_if_greater(keys=keys, args=args)))
            if updated:
                async with self.redis.pipeline(transaction=False) as pipe:
                    self._index(pipe, key, ttl)
                    if holder_key is not None:
                        self._index(pipe, holder_key, ttl)
                    await pipe.execute()
            return updated

        return await self._call("set_if_greater", _raise())

    async def put(self, key: Key, value: Any, ttl: Optional[int] = None) -> None:
        async def _put() -> None:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._key(key), json.dumps(value), ex=ttl)
                self._index(pipe, key, ttl)
                await pipe.execute()

        await self._call("put", _put())

    async def get(self, key: Key) -> Any:
        raw = _rstr(await self._call("get", self.redis.get(self._key(key))))
        return json.loads(raw) if raw is not None else None

    async def _indexed_keys(self, prefix: Key) -> List[str]:
        idx = self._index_key(prefix)
        now = self._clock()

        async def _read() -> List[Any]:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(idx, "-inf", now)
                pipe.zrangebyscore(idx, f"({now}", "+inf")
                _, members = await pipe.execute()
            return members

        scope = self._key(prefix) + ":"
        members = await self._call("index read", _read())
        return [m for m in map(_rstr, members) if m and m.startswith(scope)]

    async def _scanned_keys(self, prefix: Key) -> List[str]:
        # only for prefixes shorter than the index depth; one timeout per round trip
        pattern = self._key(prefix) + ":*"
        cursor, keys = 0, []
        while True:
            cursor, batch = await self._call(
                "scan", self.redis.scan(cursor=cursor, match=pattern, count=SCAN_COUNT)
            )
            keys.extend(k for k in map(_rstr, batch) if k)
            if int(cursor) == 0:
                return keys

    async def list_by_prefix(self, prefix: Key) -> List[Tuple[Key, Any]]:
        if len(prefix) >= INDEX_DEPTH:
            raw_keys = await self._indexed_keys(prefix)
        else:
            raw_keys = await self._scanned_keys(prefix)

        keyed = sorted((self._parse_key(k), k) for k in set(raw_keys))
        out: List[Tuple[Key, Any]] = []
        for i in range(0, len(keyed), MGET_CHUNK):
            chunk = keyed[i:i + MGET_CHUNK]
            values = await self._call("mget", self.redis.mget([k for _, k in chunk]))
            for (key, _), raw in zip(chunk, values):
                raw = _rstr(raw)
                if raw is None:
                    # expired after the index was read
                    continue
                out.append((key, json.loads(raw)))
        return out

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.redis.ping()))

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("redis close failed", exc_info=True)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class MemoryCounterStore(CounterStore):
    """
    Dict-backed store. TTLs are checked lazily on access against `clock`
    (seconds, monotonic by default). Values are copied through JSON so callers
    never share mutable state with the store, same as with Redis.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[Key, Tuple[str, Optional[float]]] = {}

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl is not None else None

    def _live(self, key: Key) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    async def increment(self, key: Key, ttl: int) -> int:
        raw = self._live(key)
        value = (json.loads(raw) if raw is not None else 0) + 1
        self._data[key] = (json.dumps(value), self._expiry(ttl))
        return value

    async def get_or_init(self, key: Key, initializer: Callable[[], Any]) -> Any:
        raw = self._live(key)
        if raw is not None:
            return json.loads(raw)
        initial = initializer()
        self._data[key] = (json.dumps(initial), None)
        return json.loads(self._data[key][0])

    async def set_if_greater(
        self,
        key: Key,
        candidate: int,
        ttl: int,
        *,
        holder_key: Optional[Key] = None,
        holder: Any = None,
    ) -> bool:
        raw = self._live(key)
        current = json.loads(raw) if raw is not None else 0
        if candidate > current:
            self._data[key] = (json.dumps(candidate), self._expiry(ttl))
            if holder_key is not None:
                self._data[holder_key] = (json.dumps(holder), self._expiry(ttl))
            return True
        return False

    async def put(self, key: Key, value: Any, ttl: Optional[int] = None) -> None:
        self._data[key] = (json.dumps(value), self._expiry(ttl))

    async def get(self, key: Key) -> Any:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def list_by_prefix(self, prefix: Key) -> List[Tuple[Key, Any]]:
        n = len(prefix)
        out = []
        for key in sorted(k for k in list(self._data) if k[:n] == prefix and len(k) > n):
            raw = self._live(key)
            if raw is not None:
                out.append((key, json.loads(raw)))
        return out


def create_store(redis_client=None) -> CounterStore:
    """Store selected by STORE_BACKEND. `redis_client` is reused when given."""
    if config.STORE_BACKEND == "memory":
        return MemoryCounterStore()
    if redis_client is None:
        from .infra.redis_client import create_redis_async
        redis_client = create_redis_async()
    return RedisCounterStore(
        redis_client,
        namespace=config.STORE_NAMESPACE,
        timeout=config.STORE_TIMEOUT_SECONDS,
    )
