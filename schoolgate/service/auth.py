from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from schoolgate.config import Settings
from schoolgate.logging import get_logger
from schoolgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    DependencyUnavailableError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
)
from schoolgate.service.otp import OtpManager, SmsSender
from schoolgate.service.tokens import TokenCodec, VerifiedClaims, bearer_token
from schoolgate.storage.errors import StoreUnavailable
from schoolgate.storage.models import (
    Membership,
    Organization,
    OTP_LOGIN_ROLES,
    User,
)

logger = get_logger(__name__)

PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")
OTP_PATTERN = re.compile(r"^\d{6}$")

MSG_TOKEN_REQUIRED = "Access token required"
MSG_INVALID_TOKEN = "Invalid or expired token"
MSG_NOT_REGISTERED = (
    "Phone number not registered. Please contact admin to create your account."
)
MSG_OTP_ROLE = "This phone number is not authorized for student/parent login."
MSG_INVALID_CREDENTIALS = "Invalid credentials"


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_active_user(self, user_id: str) -> Optional[User]: ...

    def list_memberships(self, user_id: str) -> List[Membership]: ...

    def list_active_children(
        self, parent_id: str, org_id: Optional[int] = None
    ) -> List[User]: ...

    def get_user_by_phone(self, phone_number: str) -> Optional[User]: ...

    def get_staff_by_username(self, username: str) -> Optional[User]: ...

    def get_organization(self, org_id: int) -> Optional[Organization]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def record_failed_login(
        self, user_id: str, failed_attempts: int, locked_until: Optional[datetime]
    ) -> None: ...

    def reset_failed_logins(self, user_id: str) -> None: ...


@dataclass(frozen=True)
class Principal:
    """Authenticated identity, scoped to one organization."""

    id: str
    role: str
    organization_id: int
    is_active: bool
    memberships: Tuple[Membership, ...] = ()

    def to_cache(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "org_id": self.organization_id,
            "is_active": self.is_active,
            "memberships": [
                {
                    "org_id": m.organization_id,
                    "role": m.role,
                    "is_primary": m.is_primary,
                    "org_name": m.organization_name,
                }
                for m in self.memberships
            ],
        }

    @classmethod
    def from_cache(cls, payload: dict[str, Any]) -> "Principal":
        return cls(
            id=str(payload["id"]),
            role=payload["role"],
            organization_id=int(payload["org_id"]),
            is_active=bool(payload.get("is_active", False)),
            memberships=tuple(
                Membership(
                    organization_id=int(m["org_id"]),
                    role=m["role"],
                    is_primary=bool(m.get("is_primary", False)),
                    organization_name=m.get("org_name"),
                )
                for m in payload.get("memberships") or ()
            ),
        )


@dataclass(frozen=True)
class OtpDispatch:
    expires_in: int
    attempts_remaining: int


@dataclass(frozen=True)
class LoginResult:
    token: str
    user_id: str
    role: str


def principal_cache_key(user_id: str) -> str:
    return f"user_auth:{user_id}"


class AuthService:
    """Token authentication, OTP login for students/parents and password login for staff.

    Store failures surface as ``DependencyUnavailableError``. Cache failures on
    the principal cache and the login abuse counters are logged and ignored;
    the store stays the source of truth.
    """

    def __init__(
        self,
        store: AuthStore,
        cache,
        settings: Settings,
        *,
        codec: TokenCodec,
        otp: OtpManager,
        sms: Optional[SmsSender] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.codec = codec
        self.otp = otp
        self.sms = sms or SmsSender(debug_log_codes=settings.otp_debug_log)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _store_call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except StoreUnavailable as exc:
            self.logger.error("store_unavailable", operation=operation, error=exc.message)
            raise DependencyUnavailableError("Internal server error") from exc

    # ------------------------------------------------------------------
    # Identity resolution
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        verified_claims: Optional[VerifiedClaims] = None,
    ) -> Principal:
        """Resolve the caller to an active principal.

        ``verified_claims`` are reused when an earlier stage already checked
        the token; otherwise the bearer token is verified here.
        """
        claims = verified_claims
        if claims is None:
            token = bearer_token(authorization)
            if not token:
                raise AuthenticationError(MSG_TOKEN_REQUIRED)
            claims = self.codec.verify(token)

        principal = await self._cached_principal(claims.subject_id)
        if principal is None:
            principal = self._load_principal(claims.subject_id)
            await self._cache_principal(principal)
        elif not principal.is_active:
            raise AuthenticationError("Account deactivated")
        return self._scope(principal, claims)

    async def _cached_principal(self, user_id: str) -> Optional[Principal]:
        try:
            payload = await self.cache.get_json(principal_cache_key(user_id))
        except Exception as exc:
            self.logger.warning("principal_cache_read_failed", user_id=user_id, error=str(exc))
            return None
        if not payload:
            return None
        try:
            return Principal.from_cache(payload)
        except (KeyError, TypeError, ValueError):
            self.logger.warning("principal_cache_corrupt", user_id=user_id)
            return None

    async def _cache_principal(self, principal: Principal) -> None:
        try:
            await self.cache.set_json(
                principal_cache_key(principal.id),
                principal.to_cache(),
                ttl_seconds=self.settings.principal_cache_ttl_seconds,
            )
        except Exception as exc:
            self.logger.warning(
                "principal_cache_write_failed", user_id=principal.id, error=str(exc)
            )

    def _load_principal(self, user_id: str) -> Principal:
        user = self._store_call("get_active_user", self.store.get_active_user, user_id)
        if not user:
            raise AuthenticationError(MSG_INVALID_TOKEN)
        memberships = self._store_call(
            "list_memberships", self.store.list_memberships, user_id
        )
        if not memberships:
            memberships = [Membership(organization_id=user.org_id, role=user.role, is_primary=True)]
        return Principal(
            id=user.id,
            role=user.role,
            organization_id=user.org_id,
            is_active=user.is_active,
            memberships=tuple(memberships),
        )

    def _scope(self, principal: Principal, claims: VerifiedClaims) -> Principal:
        if claims.organization_id is None:
            primary = next((m for m in principal.memberships if m.is_primary), None)
            if primary is None:
                return principal
            return replace(principal, organization_id=primary.organization_id, role=primary.role)
        for membership in principal.memberships:
            if membership.organization_id == claims.organization_id:
                return replace(
                    principal,
                    organization_id=membership.organization_id,
                    role=membership.role,
                )
        self.logger.warning(
            "token_org_not_a_membership",
            user_id=principal.id,
            org_id=claims.organization_id,
        )
        raise AuthenticationError("Invalid token")

    async def invalidate_principal(self, user_id: str) -> None:
        try:
            await self.cache.delete(principal_cache_key(user_id))
        except Exception as exc:
            self.logger.warning(
                "principal_cache_invalidate_failed", user_id=user_id, error=str(exc)
            )

    async def deactivate_user(self, user_id: str) -> Optional[User]:
        user = self._store_call("set_user_active", self.store.set_user_active, user_id, False)
        await self.invalidate_principal(user_id)
        if user:
            self.logger.info("user_deactivated", user_id=user_id)
        return user

    # ------------------------------------------------------------------
    # Login abuse counters
    # ------------------------------------------------------------------

    async def _counter_value(self, key: str) -> int:
        try:
            raw = await self.cache.get(key)
        except Exception as exc:
            self.logger.warning("login_counter_read_failed", key=key, error=str(exc))
            return 0
        try:
            return int(raw or 0)
        except (TypeError, ValueError):
            return 0

    async def _bump_counter(self, key: str, ttl_seconds: int) -> None:
        try:
            await self.cache.incr(key)
            await self.cache.expire(key, ttl_seconds)
        except Exception as exc:
            self.logger.warning("login_counter_write_failed", key=key, error=str(exc))

    # ------------------------------------------------------------------
    # OTP login
    # ------------------------------------------------------------------

    def _otp_login_user(self, phone: str) -> User:
        user = self._store_call("get_user_by_phone", self.store.get_user_by_phone, phone)
        if not user:
            raise NotFoundError(MSG_NOT_REGISTERED)
        if not user.is_active:
            raise ForbiddenError("Account is deactivated. Please contact admin.")
        if user.role not in OTP_LOGIN_ROLES:
            raise ForbiddenError(MSG_OTP_ROLE)
        return user

    async def send_otp(self, phone: Optional[str], client_ip: str) -> OtpDispatch:
        if not phone or not PHONE_PATTERN.match(phone):
            raise BadRequestError("Valid 10-digit Indian mobile number required")

        phone_key = f"otp_rate:{phone}"
        if await self._counter_value(phone_key) >= self.settings.otp_phone_requests_per_window:
            raise RateLimitedError(
                "Too many OTP requests. Please try again in 15 minutes",
                limit_type="otp_phone",
                limit=self.settings.otp_phone_requests_per_window,
                retry_after=self.settings.otp_phone_window_seconds,
            )
        ip_key = f"ip_otp:{client_ip}"
        if await self._counter_value(ip_key) >= self.settings.otp_ip_requests_per_minute:
            raise RateLimitedError(
                "Too many OTP requests from this location. Please try again in 1 minute.",
                limit_type="otp_ip",
                limit=self.settings.otp_ip_requests_per_minute,
                retry_after=60,
            )

        self._otp_login_user(phone)
        code = await self.otp.issue(phone)
        await self._bump_counter(phone_key, self.settings.otp_phone_window_seconds)
        await self._bump_counter(ip_key, 60)
        await self.sms.send_otp(phone, code)
        return OtpDispatch(
            expires_in=self.otp.ttl_seconds, attempts_remaining=self.otp.max_attempts
        )

    async def resend_otp(self, phone: Optional[str]) -> OtpDispatch:
        if not phone or not PHONE_PATTERN.match(phone):
            raise BadRequestError("Valid phone number required")
        self._otp_login_user(phone)
        code = await self.otp.issue(phone)
        await self.sms.send_otp(phone, code, resend=True)
        return OtpDispatch(
            expires_in=self.otp.ttl_seconds, attempts_remaining=self.otp.max_attempts
        )

    async def verify_otp(self, phone: Optional[str], code: Optional[str]) -> LoginResult:
        if not phone or not code or not PHONE_PATTERN.match(phone):
            raise BadRequestError("Valid phone number and OTP required")
        if not OTP_PATTERN.match(code):
            raise BadRequestError("OTP must be 6 digits")

        result = await self.otp.verify(phone, code)
        result.raise_for_error()

        user = self._otp_login_user(phone)
        token = self.codec.sign(user.id, user.org_id)
        await self.invalidate_principal(user.id)
        self.logger.info("otp_login_succeeded", user_id=user.id, role=user.role)
        return LoginResult(token=token, user_id=user.id, role=user.role)

    # ------------------------------------------------------------------
    # Staff password login
    # ------------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        """Verify a staff password against the stored argon2 hash."""
        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def faculty_login(
        self, username: Optional[str], password: Optional[str], client_ip: str
    ) -> LoginResult:
        if not username or not password or not 3 <= len(username) <= 50:
            raise AuthenticationError(MSG_INVALID_CREDENTIALS)

        ip_key = f"ip_login:{client_ip}"
        if await self._counter_value(ip_key) >= self.settings.login_ip_attempts_per_minute:
            raise RateLimitedError(
                "Too many login attempts from this location. Please try again in 1 minute.",
                limit_type="login_ip",
                limit=self.settings.login_ip_attempts_per_minute,
                retry_after=60,
            )

        try:
            return await self._password_login(username, password)
        finally:
            await self._bump_counter(ip_key, 60)

    async def _password_login(self, username: str, password: str) -> LoginResult:
        user = self._store_call(
            "get_staff_by_username", self.store.get_staff_by_username, username
        )
        if not user:
            self.logger.info("staff_login_failed", reason="unknown_user")
            raise AuthenticationError(MSG_INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.info("staff_login_failed", reason="inactive", user_id=user.id)
            raise ForbiddenError("Account is deactivated")

        now = self._now()
        if user.is_locked(now):
            locked_until = user.locked_until
            if locked_until.tzinfo is None:
                locked_until = locked_until.replace(tzinfo=timezone.utc)
            minutes = math.ceil((locked_until - now).total_seconds() / 60)
            self.logger.info("staff_login_failed", reason="locked", user_id=user.id)
            raise AccountLockedError(f"Account is locked. Try again in {minutes} minutes")

        max_failures = self.settings.login_max_failed_attempts
        if not self.verify_password(user, password):
            failed = (user.failed_attempts or 0) + 1
            locked_until = None
            if failed >= max_failures:
                locked_until = now + timedelta(minutes=self.settings.login_lockout_minutes)
            self._store_call(
                "record_failed_login",
                self.store.record_failed_login,
                user.id,
                failed,
                locked_until,
            )
            self.logger.info(
                "staff_login_failed",
                reason="bad_password",
                user_id=user.id,
                failed_attempts=failed,
            )
            if locked_until is not None:
                raise AccountLockedError(
                    f"Account locked after {max_failures} failed attempts. "
                    f"Try again in {self.settings.login_lockout_minutes} minutes"
                )
            raise AuthenticationError(
                f"{MSG_INVALID_CREDENTIALS}. {max_failures - failed} attempts remaining"
            )

        self._store_call("reset_failed_logins", self.store.reset_failed_logins, user.id)
        if self._pwd_hasher.check_needs_rehash(user.password_hash):
            self._store_call(
                "set_password_hash",
                self.store.set_password_hash,
                user.id,
                self.hash_password(password),
            )
        token = self.codec.sign(user.id, user.org_id)
        await self.invalidate_principal(user.id)
        self.logger.info("staff_login_succeeded", user_id=user.id, role=user.role)
        return LoginResult(token=token, user_id=user.id, role=user.role)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def _org_name(self, org_id: int) -> str:
        org = self._store_call("get_organization", self.store.get_organization, org_id)
        return org.name if org else "Unknown"

    def list_children(self, principal: Principal) -> List[User]:
        return self._store_call(
            "list_active_children",
            self.store.list_active_children,
            principal.id,
            principal.organization_id,
        )

    def get_profile(self, principal: Principal) -> dict[str, Any]:
        user = self._store_call("get_active_user", self.store.get_active_user, principal.id)
        if not user:
            raise AuthenticationError(MSG_INVALID_TOKEN)
        profile: dict[str, Any] = {
            "id": user.id,
            "full_name": user.full_name,
            "phone_number": user.phone_number,
            "role": principal.role,
            "org_id": principal.organization_id,
            "org_name": self._org_name(principal.organization_id),
            "created_at": user.created_at.isoformat() if user.created_at else None,
        }
        if principal.role == "parent":
            children = [
                {
                    "id": child.id,
                    "full_name": child.full_name,
                    "phone_number": child.phone_number,
                    "role": child.role,
                    "org_id": child.org_id,
                    "org_name": self._org_name(child.org_id),
                    "register_number": child.register_number,
                    "created_at": child.created_at.isoformat() if child.created_at else None,
                }
                for child in self.list_children(principal)
            ]
            profile["children"] = children
            profile["children_count"] = len(children)
        else:
            profile["register_number"] = user.register_number
        return profile

    def list_contexts(self, principal: Principal) -> List[dict[str, Any]]:
        if principal.role != "parent":
            raise ForbiddenError("This endpoint is for parents only")
        return [
            {
                "student_id": child.id,
                "org_id": child.org_id,
                "org_name": self._org_name(child.org_id),
                "full_name": child.full_name,
                "role": child.role,
            }
            for child in self.list_children(principal)
        ]
