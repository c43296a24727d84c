from __future__ import annotations

import hmac
import json
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from schoolgate.storage.errors import ConstraintViolation
from schoolgate.storage.models import (
    Membership,
    Organization,
    PASSWORD_LOGIN_ROLES,
    User,
)
from schoolgate.storage.redis_cache import (
    OTP_EXHAUSTED,
    OTP_MISMATCH,
    OTP_MISSING,
    OTP_VERIFIED,
)


class MemoryStore:
    """In-memory credential store for development and tests."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.organizations: Dict[int, Organization] = {}
        # user_id -> [(org_id, role)] for memberships beyond the primary org
        self.extra_memberships: Dict[str, List[Tuple[int, str]]] = {}
        # RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def create_organization(self, org_id: int, name: str, *, is_active: bool = True) -> Organization:
        with self._data_lock:
            if org_id in self.organizations:
                raise ConstraintViolation("organization already exists", {"id": org_id})
            org = Organization(id=org_id, name=name, is_active=is_active)
            self.organizations[org_id] = org
            return org

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self._data_lock:
            return self.organizations.get(org_id)

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"id": user.id})
            if user.phone_number and any(
                u.phone_number == user.phone_number for u in self.users.values()
            ):
                raise ConstraintViolation(
                    "phone number already registered", {"phone_number": user.phone_number}
                )
            if user.username:
                user.username = user.username.lower()
                if any(u.username == user.username for u in self.users.values()):
                    raise ConstraintViolation("username already taken", {"username": user.username})
            self.users[user.id] = user
            return user

    def add_membership(self, user_id: str, org_id: int, role: str) -> None:
        with self._data_lock:
            self.extra_memberships.setdefault(user_id, []).append((org_id, role))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_active_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user if user and user.is_active else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = datetime.now(timezone.utc)
            return user

    def list_memberships(self, user_id: str) -> List[Membership]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return []
            memberships = [self._membership(user.org_id, user.role, True)]
            seen = {user.org_id}
            for org_id, role in self.extra_memberships.get(user_id, []):
                org = self.organizations.get(org_id)
                if org_id in seen or (org and not org.is_active):
                    continue
                seen.add(org_id)
                memberships.append(self._membership(org_id, role, False))
            return memberships

    def _membership(self, org_id: int, role: str, is_primary: bool) -> Membership:
        org = self.organizations.get(org_id)
        return Membership(
            organization_id=org_id,
            role=role,
            is_primary=is_primary,
            organization_name=org.name if org else None,
        )

    def list_active_children(self, parent_id: str, org_id: Optional[int] = None) -> List[User]:
        with self._data_lock:
            children = [
                u
                for u in self.users.values()
                if u.parent_id == parent_id
                and u.is_active
                and (org_id is None or u.org_id == org_id)
            ]
            return sorted(children, key=lambda u: u.created_at)

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.phone_number == phone_number:
                    return user
            return None

    def get_staff_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.username == lowered and user.role in PASSWORD_LOGIN_ROLES:
                    return user
            return None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.password_hash = password_hash
                user.updated_at = datetime.now(timezone.utc)

    def record_failed_login(
        self, user_id: str, failed_attempts: int, locked_until: Optional[datetime]
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_attempts = failed_attempts
            if locked_until is not None:
                user.locked_until = locked_until
            user.updated_at = datetime.now(timezone.utc)

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_attempts = 0
            user.locked_until = None
            user.updated_at = datetime.now(timezone.utc)


class MemoryCache:
    """Process-local stand-in for the shared Redis cache.

    Mirrors the ``RedisCache`` interface, including its atomic scripts, so the
    services behave the same with or without Redis. Used under TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV only; counters are not shared across processes.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, str] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._expires: Dict[str, float] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def _expired(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expires.pop(key, None)
            return True
        return False

    def _get(self, key: str) -> Optional[str]:
        if self._expired(key):
            return None
        return self._values.get(key)

    def _set(self, key: str, value: str, ttl_seconds: Optional[float]) -> None:
        self._values[key] = value
        if ttl_seconds:
            self._expires[key] = self._clock() + ttl_seconds
        else:
            self._expires.pop(key, None)

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            existed = key in self._values or key in self._sets
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expires.pop(key, None)
            removed += int(existed)
        return removed

    def _incrby(self, key: str, amount: int) -> int:
        value = int(self._get(key) or 0) + amount
        self._values[key] = str(value)
        return value

    def _arm_ttl(self, key: str, ttl_seconds: int) -> None:
        if key not in self._expires:
            self._expires[key] = self._clock() + ttl_seconds

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None if it has no expiry."""
        with self._lock:
            if self._expired(key) or key not in self._expires:
                return None
            return self._expires[key] - self._clock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._set(key, str(value), ttl_seconds)

    async def delete(self, *keys: str) -> int:
        with self._lock:
            return self._delete(*keys)

    async def incr(self, key: str) -> int:
        with self._lock:
            return self._incrby(key, 1)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._expired(key) or (key not in self._values and key not in self._sets):
                return False
            self._expires[key] = self._clock() + ttl_seconds
            return True

    async def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> None:
        if not members:
            return
        with self._lock:
            self._expired(key)
            self._sets.setdefault(key, set()).update(members)
            if ttl_seconds:
                self._expires[key] = self._clock() + ttl_seconds

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            if self._expired(key):
                return set()
            return set(self._sets.get(key, ()))

    async def get_json(self, key: str) -> Optional[dict]:
        cached = await self.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_json(self, key: str, payload: dict, ttl_seconds: Optional[int] = None) -> None:
        await self.set(key, json.dumps(payload), ttl_seconds)

    async def incr_window_counters(
        self, increments: Sequence[Tuple[str, int]], ttl_seconds: int
    ) -> List[int]:
        with self._lock:
            results = []
            for key, amount in increments:
                results.append(self._incrby(key, int(amount)))
                self._arm_ttl(key, ttl_seconds)
            return results

    async def checked_incr_window_counters(
        self,
        keys: Sequence[str],
        pending: Sequence[int],
        request: Sequence[int],
        limits: Sequence[int],
        ttl_seconds: int,
    ) -> Tuple[int, List[int]]:
        with self._lock:
            values = [int(self._get(key) or 0) + int(p) for key, p in zip(keys, pending)]
            rejected = 0
            for index, (value, inc, limit) in enumerate(zip(values, request, limits), start=1):
                if value + inc > limit:
                    rejected = index
                    break
            for index, key in enumerate(keys):
                inc = int(pending[index])
                if rejected == 0:
                    inc += int(request[index])
                if inc > 0:
                    values[index] = self._incrby(key, inc)
                    self._arm_ttl(key, ttl_seconds)
            return rejected, values

    async def store_otp(
        self, otp_key: str, attempts_key: str, code: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(otp_key, code, ttl_seconds)
            self._set(attempts_key, "0", ttl_seconds)

    async def atomic_otp_attempt(
        self, otp_key: str, attempts_key: str, candidate: str, max_attempts: int
    ) -> Tuple[int, int]:
        with self._lock:
            stored = self._get(otp_key)
            if stored is None:
                self._delete(attempts_key)
                return OTP_MISSING, 0
            attempts = int(self._get(attempts_key) or 0)
            if attempts >= max_attempts:
                self._delete(otp_key, attempts_key)
                return OTP_EXHAUSTED, attempts
            if hmac.compare_digest(stored.encode(), candidate.encode()):
                self._delete(otp_key, attempts_key)
                return OTP_VERIFIED, attempts
            attempts = self._incrby(attempts_key, 1)
            if attempts >= max_attempts:
                self._delete(otp_key, attempts_key)
                return OTP_EXHAUSTED, attempts
            if otp_key in self._expires:
                self._expires[attempts_key] = self._expires[otp_key]
            return OTP_MISMATCH, attempts
