"""Tests for OTP issue and verification against the shared cache."""

from unittest.mock import AsyncMock

import pytest

from schoolgate.service.errors import (
    DependencyUnavailableError,
    OtpExhaustedError,
    OtpMismatchError,
    OtpNotFoundError,
)
from schoolgate.service.otp import (
    MSG_EXHAUSTED,
    MSG_NOT_FOUND,
    STATUS_EXHAUSTED,
    STATUS_MISMATCH,
    STATUS_NOT_FOUND,
    STATUS_VERIFIED,
    OtpManager,
    attempts_key,
    otp_key,
)
from schoolgate.storage.memory import MemoryCache

PHONE = "9876543210"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def manager(cache):
    return OtpManager(cache, ttl_seconds=100, max_attempts=3)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestGenerate:
    def test_codes_are_six_digits(self):
        for _ in range(200):
            code = OtpManager.generate()
            assert len(code) == 6
            assert code.isdigit()


class TestIssue:
    async def test_issue_stores_code_and_zeroed_counter(self, manager, cache):
        code = await manager.issue(PHONE)
        assert await cache.get(otp_key(PHONE)) == code
        assert await cache.get(attempts_key(PHONE)) == "0"
        assert 0 < cache.ttl(otp_key(PHONE)) <= 100
        assert 0 < cache.ttl(attempts_key(PHONE)) <= 100

    async def test_reissue_supersedes_previous_code(self, manager, cache):
        first = await manager.issue(PHONE)
        await manager.verify(PHONE, _wrong(first))
        second = await manager.issue(PHONE)
        assert await cache.get(otp_key(PHONE)) == second
        assert await manager.remaining_attempts(PHONE) == 3

    async def test_cache_failure_is_raised(self):
        broken = AsyncMock()
        broken.store_otp.side_effect = ConnectionError("redis down")
        with pytest.raises(DependencyUnavailableError) as excinfo:
            await OtpManager(broken).issue(PHONE)
        assert excinfo.value.message == "Failed to send OTP"


class TestVerify:
    async def test_correct_code_succeeds_once(self, manager):
        code = await manager.issue(PHONE)
        result = await manager.verify(PHONE, code)
        assert result.success
        assert result.status == STATUS_VERIFIED

        replay = await manager.verify(PHONE, code)
        assert not replay.success
        assert replay.status == STATUS_NOT_FOUND
        assert replay.error == MSG_NOT_FOUND

    async def test_unknown_phone_is_not_found(self, manager):
        result = await manager.verify(PHONE, "123456")
        assert result.status == STATUS_NOT_FOUND

    async def test_wrong_attempts_count_down_then_invalidate(self, manager, cache):
        code = await manager.issue(PHONE)
        wrong = _wrong(code)

        first = await manager.verify(PHONE, wrong)
        assert first.status == STATUS_MISMATCH
        assert first.error == "Invalid OTP. 2 attempts remaining"
        assert first.attempts_remaining == 2
        assert await manager.remaining_attempts(PHONE) == 2

        second = await manager.verify(PHONE, wrong)
        assert second.error == "Invalid OTP. 1 attempt remaining"
        assert second.attempts_remaining == 1

        third = await manager.verify(PHONE, wrong)
        assert third.status == STATUS_EXHAUSTED
        assert third.error == MSG_EXHAUSTED
        assert third.error == "OTP invalidated due to too many wrong attempts"

        assert await cache.get(otp_key(PHONE)) is None
        assert await cache.get(attempts_key(PHONE)) is None

        # The real code no longer works once the record is gone
        after = await manager.verify(PHONE, code)
        assert after.status == STATUS_NOT_FOUND

    async def test_expired_code_is_not_found(self, manager, clock):
        code = await manager.issue(PHONE)
        clock.now += 101
        result = await manager.verify(PHONE, code)
        assert result.status == STATUS_NOT_FOUND

    async def test_mismatch_keeps_counter_alive_with_code(self, manager, cache, clock):
        code = await manager.issue(PHONE)
        clock.now += 40
        await manager.verify(PHONE, _wrong(code))
        assert cache.ttl(attempts_key(PHONE)) == pytest.approx(cache.ttl(otp_key(PHONE)))

    async def test_cache_failure_fails_closed(self):
        broken = AsyncMock()
        broken.atomic_otp_attempt.side_effect = ConnectionError("redis down")
        with pytest.raises(DependencyUnavailableError):
            await OtpManager(broken).verify(PHONE, "123456")


class TestResultErrors:
    async def test_raise_for_error_maps_statuses(self, manager):
        code = await manager.issue(PHONE)
        wrong = _wrong(code)

        with pytest.raises(OtpMismatchError) as mismatch:
            (await manager.verify(PHONE, wrong)).raise_for_error()
        assert mismatch.value.status_code == 400
        assert mismatch.value.attempts_remaining == 2

        await manager.verify(PHONE, wrong)
        with pytest.raises(OtpExhaustedError):
            (await manager.verify(PHONE, wrong)).raise_for_error()

        with pytest.raises(OtpNotFoundError):
            (await manager.verify(PHONE, code)).raise_for_error()

    async def test_success_does_not_raise(self, manager):
        code = await manager.issue(PHONE)
        (await manager.verify(PHONE, code)).raise_for_error()


class TestRemainingAttempts:
    async def test_unknown_phone_reports_full_budget(self, manager):
        assert await manager.remaining_attempts(PHONE) == 3

    async def test_invalidate_removes_record(self, manager, cache):
        await manager.issue(PHONE)
        await manager.invalidate(PHONE)
        assert await cache.get(otp_key(PHONE)) is None
