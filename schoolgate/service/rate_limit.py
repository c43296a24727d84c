from __future__ import annotations

import asyncio
import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from schoolgate.logging import get_logger
from schoolgate.service.errors import InvalidTokenError, RateLimitedError
from schoolgate.service.tokens import TokenCodec, VerifiedClaims, bearer_token

logger = get_logger(__name__)

MB = 1024 * 1024


@dataclass
class RequestContext:
    """What the rate limiters and the auth gate know about one request.

    ``verified_claims`` is filled in by whichever stage verifies the bearer
    token first so later stages can reuse it instead of verifying again.
    """

    client_ip: str
    authorization: Optional[str] = None
    user_agent: str = ""
    accept_language: str = ""
    accept_encoding: str = ""
    body: Optional[Mapping[str, Any]] = None
    verified_claims: Optional[VerifiedClaims] = None
    token_verified: bool = False
    token_rejected: bool = False

    def resolve_claims(self, codec: TokenCodec) -> Optional[VerifiedClaims]:
        """Verify the bearer token once and remember the outcome."""
        if self.token_verified:
            return self.verified_claims
        if self.token_rejected:
            return None
        token = bearer_token(self.authorization)
        if not token:
            return None
        try:
            claims = codec.verify(token)
        except InvalidTokenError:
            logger.warning("rate_limit_token_rejected", client_ip=self.client_ip)
            self.verified_claims = None
            self.token_rejected = True
            return None
        self.verified_claims = claims
        self.token_verified = True
        return claims


@dataclass
class _LocalEntry:
    values: List[int]
    pending: List[int]
    refreshed_at: float


class LocalCounterCache:
    """Bounded per-process view of shared window counters.

    A fresh entry answers limit checks without a round trip and accumulates
    the increments it admitted as ``pending``; those are handed back to the
    caller on the next refresh so they reach the shared counter. Entries older
    than ``ttl_seconds`` are stale and are removed by ``sweep``.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _LocalEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _fresh(self, key: str, now: float) -> Optional[_LocalEntry]:
        entry = self._entries.get(key)
        if entry is None or now - entry.refreshed_at >= self.ttl_seconds:
            return None
        return entry

    def reserve(
        self, key: str, request: Sequence[int], limits: Sequence[int]
    ) -> Optional[Tuple[int, List[int]]]:
        """Admit ``request`` against a fresh entry.

        Returns None when there is no fresh entry. Otherwise returns
        ``(rejected, values)``: ``rejected`` is the 1-based index of the first
        limit the request would exceed (0 when admitted) and ``values`` are the
        counters after admission, or before the request when rejected.
        """
        with self._lock:
            entry = self._fresh(key, self._clock())
            if entry is None:
                return None
            for index, (value, inc, limit) in enumerate(
                zip(entry.values, request, limits), start=1
            ):
                if value + inc > limit:
                    return index, list(entry.values)
            for index, inc in enumerate(request):
                entry.values[index] += inc
                entry.pending[index] += inc
            return 0, list(entry.values)

    def take_pending(self, key: str, size: int) -> List[int]:
        """Remove and return increments not yet written to the shared cache."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return [0] * size
            pending = list(entry.pending)
            entry.pending = [0] * size
            return pending

    def restore_pending(self, key: str, pending: Sequence[int]) -> None:
        if not any(pending):
            return
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LocalEntry(
                    values=list(pending), pending=[0] * len(pending), refreshed_at=float("-inf")
                )
                self._entries[key] = entry
            entry.pending = [a + b for a, b in zip(entry.pending, pending)]

    def store(self, key: str, values: Sequence[int]) -> None:
        """Record the shared counters just observed for ``key``."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            pending = entry.pending if entry else [0] * len(values)
            self._entries[key] = _LocalEntry(
                values=[v + p for v, p in zip(values, pending)],
                pending=list(pending),
                refreshed_at=now,
            )
            overflow = len(self._entries) > self.max_entries
        if overflow:
            self.sweep()

    def sweep(self) -> int:
        """Drop stale entries and return how many were removed."""
        with self._lock:
            cutoff = self._clock() - self.ttl_seconds
            stale = [k for k, e in self._entries.items() if e.refreshed_at < cutoff]
            for key in stale:
                del self._entries[key]
        return len(stale)


async def run_sweeper(
    local_cache: LocalCounterCache, interval_seconds: float, *, name: str
) -> None:
    """Sweep ``local_cache`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = local_cache.sweep()
        except Exception as exc:
            logger.warning("local_cache_sweep_failed", cache=name, error=str(exc))
            continue
        if removed:
            logger.info("local_cache_swept", cache=name, removed=removed)


def _fingerprint(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:12]


def _retry_after(now: float, window_seconds: int) -> Tuple[int, int]:
    window = int(now // window_seconds)
    remaining = (window + 1) * window_seconds - now
    return window, max(1, math.ceil(remaining))


@dataclass(frozen=True)
class RateLimitRule:
    window_seconds: int
    max_requests: int


DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "user": RateLimitRule(window_seconds=15 * 60, max_requests=500),
    "phone": RateLimitRule(window_seconds=5 * 60, max_requests=3),
    "username": RateLimitRule(window_seconds=15 * 60, max_requests=5),
    "device": RateLimitRule(window_seconds=15 * 60, max_requests=50),
}


@dataclass(frozen=True)
class RateLimitDecision:
    limit_type: str
    limit: int
    remaining: int
    current: int
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Type": self.limit_type,
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
        }


class RateLimiter:
    """Fixed-window request limiter keyed by the caller's identity class."""

    def __init__(
        self,
        cache,
        codec: TokenCodec,
        *,
        local_cache: Optional[LocalCounterCache] = None,
        limits: Optional[Mapping[str, RateLimitRule]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.codec = codec
        self.local_cache = (
            local_cache if local_cache is not None else LocalCounterCache(max_entries=1000)
        )
        self.limits = dict(limits or DEFAULT_RATE_LIMITS)
        self._clock = clock

    def identify(self, ctx: RequestContext) -> str:
        claims = ctx.resolve_claims(self.codec)
        if claims is not None:
            return f"user:{claims.subject_id}"
        body = ctx.body or {}
        if body.get("phoneNumber"):
            return f"phone:{body['phoneNumber']}"
        if body.get("username"):
            return f"username:{body['username']}"
        fingerprint = _fingerprint(
            ctx.client_ip, ctx.user_agent, ctx.accept_language, ctx.accept_encoding
        )
        return f"device:{ctx.client_ip}-{fingerprint}"

    def _rule(self, limit_type: str) -> RateLimitRule:
        return self.limits.get(limit_type) or self.limits["device"]

    async def limit(self, ctx: RequestContext) -> RateLimitDecision:
        """Count the request; raise ``RateLimitedError`` when over the limit.

        Shared-cache failures are logged and the request is allowed.
        """
        identifier = self.identify(ctx)
        limit_type = identifier.split(":", 1)[0]
        rule = self._rule(limit_type)
        window, retry_after = _retry_after(self._clock(), rule.window_seconds)
        local_key = f"{identifier}:{window}"

        local = self.local_cache.reserve(local_key, (1,), (rule.max_requests,))
        if local is not None:
            rejected, values = local
            if rejected:
                raise self._rejection(limit_type, rule, retry_after)
            return self._decision(limit_type, rule, values[0])

        pending = self.local_cache.take_pending(local_key, 1)
        try:
            (current,) = await self.cache.incr_window_counters(
                [(f"rate_limit:{identifier}:{window}", pending[0] + 1)],
                rule.window_seconds,
            )
        except Exception as exc:
            self.local_cache.restore_pending(local_key, pending)
            logger.warning(
                "rate_limit_cache_unavailable", limit_type=limit_type, error=str(exc)
            )
            return RateLimitDecision(
                limit_type=limit_type,
                limit=rule.max_requests,
                remaining=rule.max_requests,
                current=0,
                degraded=True,
            )
        self.local_cache.store(local_key, [current])

        if current > rule.max_requests:
            if current > rule.max_requests * 2:
                logger.warning(
                    "rate_limit_excessive_requests",
                    limit_type=limit_type,
                    identifier=identifier,
                    current=current,
                    limit=rule.max_requests,
                )
            raise self._rejection(limit_type, rule, retry_after)
        return self._decision(limit_type, rule, current)

    @staticmethod
    def _decision(limit_type: str, rule: RateLimitRule, current: int) -> RateLimitDecision:
        return RateLimitDecision(
            limit_type=limit_type,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - current),
            current=current,
        )

    @staticmethod
    def _rejection(limit_type: str, rule: RateLimitRule, retry_after: int) -> RateLimitedError:
        return RateLimitedError(
            f"Too many {limit_type} requests. Please try again later.",
            limit_type=limit_type,
            limit=rule.max_requests,
            retry_after=retry_after,
        )


@dataclass(frozen=True)
class UploadRule:
    window_seconds: int
    max_requests: int
    max_files: int
    max_bytes: int

    @property
    def limits(self) -> Tuple[int, int, int]:
        return (self.max_requests, self.max_files, self.max_bytes)


DEFAULT_UPLOAD_LIMITS: Dict[str, UploadRule] = {
    "file_upload": UploadRule(
        window_seconds=60 * 60, max_requests=20, max_files=100, max_bytes=500 * MB
    ),
    "file_upload_ip": UploadRule(
        window_seconds=60 * 60, max_requests=5, max_files=20, max_bytes=50 * MB
    ),
}

_UPLOAD_DIMENSIONS = ("requests", "files", "size")


@dataclass(frozen=True)
class UploadDecision:
    rule: UploadRule
    requests: int
    files: int
    total_bytes: int
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        rule = self.rule
        return {
            "X-FileUpload-Requests-Limit": str(rule.max_requests),
            "X-FileUpload-Requests-Remaining": str(max(0, rule.max_requests - self.requests)),
            "X-FileUpload-Files-Limit": str(rule.max_files),
            "X-FileUpload-Files-Remaining": str(max(0, rule.max_files - self.files)),
            "X-FileUpload-Size-Limit": str(rule.max_bytes),
            "X-FileUpload-Size-Remaining": str(max(0, rule.max_bytes - self.total_bytes)),
        }


@dataclass
class UploadBatch:
    """File count and total byte size of one upload request."""

    file_count: int
    total_bytes: int

    @classmethod
    def from_sizes(cls, sizes: Sequence[int]) -> "UploadBatch":
        sizes = [int(s or 0) for s in sizes]
        return cls(file_count=len(sizes), total_bytes=sum(sizes))


class FileUploadRateLimiter:
    """Hourly quota on upload requests, files and bytes per caller.

    The incoming batch is checked before it is counted, so a rejected
    request does not consume quota.
    """

    def __init__(
        self,
        cache,
        codec: TokenCodec,
        *,
        local_cache: Optional[LocalCounterCache] = None,
        limits: Optional[Mapping[str, UploadRule]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.codec = codec
        self.local_cache = (
            local_cache if local_cache is not None else LocalCounterCache(max_entries=500)
        )
        self.limits = dict(limits or DEFAULT_UPLOAD_LIMITS)
        self._clock = clock

    def identify(self, ctx: RequestContext) -> str:
        claims = ctx.resolve_claims(self.codec)
        if claims is not None:
            return f"file_upload:{claims.subject_id}"
        fingerprint = _fingerprint(ctx.client_ip, ctx.user_agent)
        return f"file_upload_ip:{ctx.client_ip}-{fingerprint}"

    async def limit(self, ctx: RequestContext, batch: UploadBatch) -> UploadDecision:
        identifier = self.identify(ctx)
        rule = self.limits.get(identifier.split(":", 1)[0]) or self.limits["file_upload_ip"]
        window, retry_after = _retry_after(self._clock(), rule.window_seconds)
        local_key = f"{identifier}:{window}"
        request = (1, batch.file_count, batch.total_bytes)

        local = self.local_cache.reserve(local_key, request, rule.limits)
        if local is None:
            pending = self.local_cache.take_pending(local_key, len(request))
            keys = [f"rate_limit:{identifier}:{dim}:{window}" for dim in _UPLOAD_DIMENSIONS]
            try:
                rejected, values = await self.cache.checked_incr_window_counters(
                    keys, pending, request, rule.limits, rule.window_seconds
                )
            except Exception as exc:
                self.local_cache.restore_pending(local_key, pending)
                logger.warning("file_upload_limit_cache_unavailable", error=str(exc))
                return UploadDecision(
                    rule=rule, requests=0, files=0, total_bytes=0, degraded=True
                )
            self.local_cache.store(local_key, values)
        else:
            rejected, values = local

        if rejected:
            logger.info(
                "file_upload_rejected",
                identifier=identifier,
                dimension=_UPLOAD_DIMENSIONS[rejected - 1],
                files=batch.file_count,
                total_bytes=batch.total_bytes,
            )
            raise self._rejection(rejected, rule, values, batch, retry_after)
        return UploadDecision(
            rule=rule, requests=values[0], files=values[1], total_bytes=values[2]
        )

    @staticmethod
    def _rejection(
        rejected: int,
        rule: UploadRule,
        values: Sequence[int],
        batch: UploadBatch,
        retry_after: int,
    ) -> RateLimitedError:
        if rejected == 1:
            return RateLimitedError(
                "Too many file upload requests. Please try again later.",
                limit_type="file_upload_requests",
                limit=rule.max_requests,
                retry_after=retry_after,
                current=values[0],
            )
        if rejected == 2:
            return RateLimitedError(
                f"File limit exceeded. You can upload {rule.max_files} files per hour.",
                limit_type="file_upload_files",
                limit=rule.max_files,
                retry_after=retry_after,
                current=values[1],
            )
        limit_mb = round(rule.max_bytes / MB)
        current_mb = round((values[2] + batch.total_bytes) / MB)
        return RateLimitedError(
            f"Upload size limit exceeded. You can upload {limit_mb}MB per hour. "
            f"Current: {current_mb}MB",
            limit_type="file_upload_size",
            limit=rule.max_bytes,
            retry_after=retry_after,
            current=values[2],
        )
