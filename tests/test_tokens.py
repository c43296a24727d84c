"""Tests for bearer token signing and verification."""

import base64
import json

import pytest

from schoolgate.service.errors import InvalidTokenError
from schoolgate.service.tokens import TokenCodec, VerifiedClaims, bearer_token

SECRET = "unit-test-signing-secret"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, ttl_minutes=60, clock=clock)


class TestRoundTrip:
    def test_sign_then_verify_returns_claims(self, codec):
        token = codec.sign("user-123", 100001)
        assert codec.verify(token) == VerifiedClaims(
            subject_id="user-123", organization_id=100001
        )

    def test_organization_is_optional(self, codec):
        claims = codec.verify(codec.sign("user-123"))
        assert claims.subject_id == "user-123"
        assert claims.organization_id is None

    def test_payload_uses_wire_claim_names(self, codec, clock):
        token = codec.sign("user-123", 100001)
        payload_b64 = token.split(".")[1]
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))
        assert payload["userId"] == "user-123"
        assert payload["orgId"] == 100001
        assert payload["exp"] - payload["iat"] == 3600
        assert payload["iat"] == int(clock.now)


class TestRejection:
    def test_wrong_secret_is_rejected(self, codec, clock):
        other = TokenCodec("some-other-secret", ttl_minutes=60, clock=clock)
        with pytest.raises(InvalidTokenError):
            codec.verify(other.sign("user-123", 100001))

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
    def test_garbage_is_rejected(self, codec, garbage):
        with pytest.raises(InvalidTokenError):
            codec.verify(garbage)

    @pytest.mark.parametrize("signature", ["é", "sigéé", "☃"])
    def test_non_ascii_signature_is_rejected(self, codec, signature):
        header_b64, payload_b64, _ = codec.sign("user-123", 100001).split(".")
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header_b64}.{payload_b64}.{signature}")

    def test_non_ascii_header_is_rejected(self, codec):
        _, payload_b64, sig_b64 = codec.sign("user-123", 100001).split(".")
        with pytest.raises(InvalidTokenError):
            codec.verify(f"é.{payload_b64}.{sig_b64}")

    def test_non_string_is_rejected(self, codec):
        with pytest.raises(InvalidTokenError):
            codec.verify(None)

    def test_expired_token_is_rejected(self, codec, clock):
        token = codec.sign("user-123")
        clock.now += 3601
        with pytest.raises(InvalidTokenError):
            codec.verify(token)

    def test_tampered_payload_is_rejected(self, codec):
        header, _, signature = codec.sign("user-123", 100001).split(".")
        forged = _b64({"userId": "admin-1", "orgId": 100001, "exp": 9_999_999_999})
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{forged}.{signature}")

    def test_alg_none_header_is_rejected(self, codec):
        _, payload, signature = codec.sign("user-123").split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{payload}.{signature}")

    def test_error_message_is_generic(self, codec):
        with pytest.raises(InvalidTokenError) as excinfo:
            codec.verify("abc")
        assert excinfo.value.message == "Invalid or expired token"
        assert excinfo.value.status_code == 401


class TestConstruction:
    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            TokenCodec("", ttl_minutes=60)


class TestBearerToken:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer   abc.def.ghi ", "abc.def.ghi"),
            ("Basic dXNlcjpwdw==", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extracts_token(self, header, expected):
        assert bearer_token(header) == expected
