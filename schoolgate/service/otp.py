from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Optional

from schoolgate.logging import get_logger, mask_value
from schoolgate.service.errors import (
    DependencyUnavailableError,
    OtpExhaustedError,
    OtpMismatchError,
    OtpNotFoundError,
)
from schoolgate.storage.redis_cache import (
    OTP_EXHAUSTED,
    OTP_MISMATCH,
    OTP_MISSING,
    OTP_VERIFIED,
)

logger = get_logger(__name__)

OTP_DIGITS = 6

STATUS_VERIFIED = "verified"
STATUS_NOT_FOUND = "not_found"
STATUS_MISMATCH = "mismatch"
STATUS_EXHAUSTED = "exhausted"

MSG_NOT_FOUND = "OTP expired or not found"
MSG_EXHAUSTED = "OTP invalidated due to too many wrong attempts"


def otp_key(phone: str) -> str:
    return f"otp:{phone}"


def attempts_key(phone: str) -> str:
    return f"otp_attempts:{phone}"


def mismatch_message(remaining: int) -> str:
    return f"Invalid OTP. {remaining} attempt{'s' if remaining > 1 else ''} remaining"


@dataclass(frozen=True)
class OtpResult:
    success: bool
    status: str
    error: Optional[str] = None
    attempts_remaining: Optional[int] = None

    def raise_for_error(self) -> None:
        """Raise the matching 400 error for a failed verification."""
        if self.success:
            return
        if self.status == STATUS_MISMATCH:
            raise OtpMismatchError(
                self.error or mismatch_message(self.attempts_remaining or 0),
                attempts_remaining=self.attempts_remaining or 0,
            )
        if self.status == STATUS_EXHAUSTED:
            raise OtpExhaustedError(self.error or MSG_EXHAUSTED)
        raise OtpNotFoundError(self.error or MSG_NOT_FOUND)


class SmsSender:
    """Outbound SMS delivery stub; records deliveries in the log only."""

    def __init__(self, *, debug_log_codes: bool = False) -> None:
        self.debug_log_codes = debug_log_codes

    async def send_otp(self, phone: str, code: str, *, resend: bool = False) -> None:
        fields: dict[str, Any] = {"phone": phone, "resend": resend}
        if self.debug_log_codes:
            # Not a redacted key; local development only
            fields["debug_code"] = code
        logger.info("sms_otp_dispatched", **fields)


class OtpManager:
    """Issues and verifies one-time codes stored in the shared cache.

    The code and its attempt counter live under ``otp:{phone}`` and
    ``otp_attempts:{phone}`` with the same TTL. Verification runs as a single
    atomic cache operation so concurrent guesses cannot share an attempt.
    Cache failures are raised as ``DependencyUnavailableError``; an OTP cannot
    be checked without the cache.
    """

    def __init__(self, cache, *, ttl_seconds: int = 100, max_attempts: int = 3) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts

    @staticmethod
    def generate() -> str:
        return str(secrets.randbelow(10**OTP_DIGITS)).zfill(OTP_DIGITS)

    async def issue(self, phone: str) -> str:
        code = self.generate()
        try:
            await self.cache.store_otp(otp_key(phone), attempts_key(phone), code, self.ttl_seconds)
        except Exception as exc:
            logger.error("otp_store_failed", phone=phone, error=str(exc))
            raise DependencyUnavailableError("Failed to send OTP") from exc
        logger.info("otp_issued", phone=phone, ttl_seconds=self.ttl_seconds)
        return code

    async def verify(self, phone: str, candidate: str) -> OtpResult:
        try:
            status, attempts = await self.cache.atomic_otp_attempt(
                otp_key(phone), attempts_key(phone), str(candidate), self.max_attempts
            )
        except Exception as exc:
            logger.error("otp_verify_failed", phone=phone, error=str(exc))
            raise DependencyUnavailableError("Login failed") from exc

        if status == OTP_VERIFIED:
            logger.info("otp_verified", phone=phone)
            return OtpResult(success=True, status=STATUS_VERIFIED)
        if status == OTP_MISSING:
            return OtpResult(success=False, status=STATUS_NOT_FOUND, error=MSG_NOT_FOUND)
        if status == OTP_EXHAUSTED:
            logger.warning("otp_exhausted", phone=phone, attempts=attempts)
            return OtpResult(
                success=False,
                status=STATUS_EXHAUSTED,
                error=MSG_EXHAUSTED,
                attempts_remaining=0,
            )
        if status == OTP_MISMATCH:
            remaining = max(0, self.max_attempts - attempts)
            logger.info("otp_mismatch", phone=phone, attempts_remaining=remaining)
            return OtpResult(
                success=False,
                status=STATUS_MISMATCH,
                error=mismatch_message(remaining),
                attempts_remaining=remaining,
            )
        raise DependencyUnavailableError(
            "Login failed", detail={"otp_status": status, "phone": mask_value(phone)}
        )

    async def remaining_attempts(self, phone: str) -> int:
        try:
            raw = await self.cache.get(attempts_key(phone))
        except Exception as exc:
            logger.error("otp_attempts_read_failed", phone=phone, error=str(exc))
            raise DependencyUnavailableError("OTP state unavailable") from exc
        try:
            attempts = int(raw or 0)
        except (TypeError, ValueError):
            attempts = 0
        return max(0, min(self.max_attempts, self.max_attempts - attempts))

    async def invalidate(self, phone: str) -> None:
        try:
            await self.cache.delete(otp_key(phone), attempts_key(phone))
        except Exception as exc:
            logger.error("otp_invalidate_failed", phone=phone, error=str(exc))
            raise DependencyUnavailableError("OTP state unavailable") from exc
