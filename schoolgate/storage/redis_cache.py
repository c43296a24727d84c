from __future__ import annotations

import json
from typing import Any, Iterable, List, Optional, Sequence, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Statuses returned by the OTP attempt script
OTP_VERIFIED = 0
OTP_MISMATCH = 1
OTP_EXHAUSTED = 2
OTP_MISSING = 3


class RedisCache:
    """Thin Redis wrapper for OTP records, rate-limit counters and auth caches."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    _STORE_OTP_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
redis.call('SET', KEYS[2], '0', 'EX', ARGV[2])
return 1
"""

    # Compare, count and invalidate in one step so concurrent guesses cannot
    # both observe the same attempt count.
    _OTP_ATTEMPT_SCRIPT = """
local stored = redis.call('GET', KEYS[1])
if not stored then
  redis.call('DEL', KEYS[2])
  return {3, 0}
end
local max_attempts = tonumber(ARGV[2])
local attempts = tonumber(redis.call('GET', KEYS[2]) or '0')
if attempts >= max_attempts then
  redis.call('DEL', KEYS[1], KEYS[2])
  return {2, attempts}
end
-- compare digests so response time does not track a matching prefix
if redis.sha1hex(stored) == redis.sha1hex(ARGV[1]) then
  redis.call('DEL', KEYS[1], KEYS[2])
  return {0, attempts}
end
attempts = redis.call('INCR', KEYS[2])
if attempts >= max_attempts then
  redis.call('DEL', KEYS[1], KEYS[2])
  return {2, attempts}
end
-- the counter never outlives the code it guards
local ttl = redis.call('PTTL', KEYS[1])
if ttl > 0 then
  redis.call('PEXPIRE', KEYS[2], ttl)
end
return {1, attempts}
"""

    _INCR_WINDOW_SCRIPT = """
local ttl = tonumber(ARGV[#ARGV])
local results = {}
for i, key in ipairs(KEYS) do
  local value = redis.call('INCRBY', key, ARGV[i])
  if redis.call('TTL', key) < 0 then
    redis.call('EXPIRE', key, ttl)
  end
  results[i] = value
end
return results
"""

    # ARGV layout: pending[n], request[n], limits[n], ttl. Pending increments
    # are always applied; the request's increments only when every limit holds.
    _CHECKED_INCR_SCRIPT = """
local n = #KEYS
local ttl = tonumber(ARGV[3 * n + 1])
local values = {}
for i = 1, n do
  values[i] = tonumber(redis.call('GET', KEYS[i]) or '0') + tonumber(ARGV[i])
end
local rejected = 0
for i = 1, n do
  if values[i] + tonumber(ARGV[n + i]) > tonumber(ARGV[2 * n + i]) then
    rejected = i
    break
  end
end
for i = 1, n do
  local inc = tonumber(ARGV[i])
  if rejected == 0 then
    inc = inc + tonumber(ARGV[n + i])
  end
  if inc > 0 then
    values[i] = redis.call('INCRBY', KEYS[i], inc)
    if redis.call('TTL', KEYS[i]) < 0 then
      redis.call('EXPIRE', KEYS[i], ttl)
    end
  end
end
table.insert(values, 1, rejected)
return values
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.close()

    # ------------------------------------------------------------------
    # Generic key/value primitives
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> None:
        if not members:
            return
        await self.client.sadd(key, *members)
        if ttl_seconds:
            await self.client.expire(key, ttl_seconds)

    async def smembers(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key) or ())

    async def get_json(self, key: str) -> Optional[dict]:
        cached = await self.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as cache miss
            return None

    async def set_json(self, key: str, payload: dict, ttl_seconds: Optional[int] = None) -> None:
        await self.set(key, json.dumps(payload), ttl_seconds)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def incr_window_counters(
        self, increments: Sequence[Tuple[str, int]], ttl_seconds: int
    ) -> List[int]:
        """Atomically INCRBY every key, arming the window expiry on new keys."""
        keys = [key for key, _ in increments]
        args = [int(amount) for _, amount in increments] + [int(ttl_seconds)]
        result = await self.client.eval(self._INCR_WINDOW_SCRIPT, len(keys), *keys, *args)
        return [int(value) for value in result]

    async def checked_incr_window_counters(
        self,
        keys: Sequence[str],
        pending: Sequence[int],
        request: Sequence[int],
        limits: Sequence[int],
        ttl_seconds: int,
    ) -> Tuple[int, List[int]]:
        """Apply ``request`` increments only if every counter stays within its limit.

        Returns:
            (rejected, values) where ``rejected`` is the 1-based index of the
            first counter that would exceed its limit (0 when accepted) and
            ``values`` are the counters after the update.
        """
        args = [int(v) for v in (*pending, *request, *limits)] + [int(ttl_seconds)]
        result = await self.client.eval(
            self._CHECKED_INCR_SCRIPT, len(keys), *keys, *args
        )
        return int(result[0]), [int(value) for value in result[1:]]

    # ------------------------------------------------------------------
    # OTP records
    # ------------------------------------------------------------------

    async def store_otp(
        self, otp_key: str, attempts_key: str, code: str, ttl_seconds: int
    ) -> None:
        await self.client.eval(
            self._STORE_OTP_SCRIPT, 2, otp_key, attempts_key, code, int(ttl_seconds)
        )

    async def atomic_otp_attempt(
        self, otp_key: str, attempts_key: str, candidate: str, max_attempts: int
    ) -> Tuple[int, int]:
        """Check a candidate code and update the attempt counter in one step.

        Returns:
            (status, attempts) with status one of OTP_VERIFIED, OTP_MISMATCH,
            OTP_EXHAUSTED or OTP_MISSING.
        """
        result = await self.client.eval(
            self._OTP_ATTEMPT_SCRIPT,
            2,
            otp_key,
            attempts_key,
            candidate,
            int(max_attempts),
        )
        return int(result[0]), int(result[1])


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures.

    Lets ``RedisCache`` await ``self.client.<method>()`` uniformly whether the
    underlying client is async or sync.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def ping(self) -> bool:
        return self._sync.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def incr(self, key: str) -> int:
        return self._sync.incr(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return self._sync.expire(key, ttl)

    async def sadd(self, key: str, *members: str) -> int:
        return self._sync.sadd(key, *members)

    async def smembers(self, key: str) -> Iterable[str]:
        return self._sync.smembers(key)

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        return self._sync.eval(script, numkeys, *keys_and_args)

    async def close(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """Redis wrapper backed by a synchronous client, for use in tests.

    Avoids event loop binding issues under pytest while keeping the awaitable
    interface of ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()
