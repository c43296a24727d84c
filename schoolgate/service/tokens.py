from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from schoolgate.logging import get_logger
from schoolgate.service.errors import InvalidTokenError

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerifiedClaims:
    """Decoded claims of a token whose signature and expiry have been checked."""

    subject_id: str
    organization_id: Optional[int] = None


class TokenCodec:
    """HS256 JWT signing and verification with a single process-wide secret."""

    def __init__(
        self,
        secret: str,
        *,
        ttl_minutes: int = 7 * 24 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be configured")
        self._secret = secret.encode()
        self.ttl_seconds = int(ttl_minutes) * 60
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, subject_id: str, organization_id: Optional[int] = None) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "userId": subject_id,
            "orgId": organization_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> VerifiedClaims:
        """Return the token's claims or raise ``InvalidTokenError``.

        Rejects malformed tokens, a header ``alg`` other than HS256, a bad
        signature, a missing subject and an elapsed ``exp``.
        """
        if not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        signing_input = f"{header_b64}.{payload_b64}"
        # Header values arrive latin-1 decoded; compare bytes so non-ASCII input fails cleanly
        expected = self._signature(signing_input).encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()

        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError() from None
        if exp_ts <= self._clock():
            raise InvalidTokenError()

        subject = payload.get("userId")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError()

        org_id = payload.get("orgId")
        if org_id is not None:
            if isinstance(org_id, bool):
                raise InvalidTokenError()
            try:
                org_id = int(org_id)
            except (TypeError, ValueError):
                raise InvalidTokenError() from None
        return VerifiedClaims(subject_id=subject, organization_id=org_id)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None
