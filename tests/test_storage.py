"""Unit tests for the memory store, the memory cache and Postgres error mapping."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from schoolgate.logging import get_logger
from schoolgate.storage.errors import ConstraintViolation, StoreUnavailable
from schoolgate.storage.memory import MemoryCache, MemoryStore
from schoolgate.storage.models import User
from schoolgate.storage.postgres import PostgresStore
from schoolgate.storage.redis_cache import (
    OTP_EXHAUSTED,
    OTP_MISMATCH,
    OTP_MISSING,
    OTP_VERIFIED,
    RedisCache,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def store():
    store = MemoryStore()
    store.create_organization(100001, "Springfield High")
    store.create_organization(100002, "Shelbyville Academy")
    return store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


class TestMemoryStore:
    def test_duplicate_phone_is_rejected(self, store):
        store.create_user(User.new("student", 100001, phone_number="9876543210"))
        with pytest.raises(ConstraintViolation):
            store.create_user(User.new("parent", 100001, phone_number="9876543210"))

    def test_usernames_are_case_insensitive(self, store):
        user = store.create_user(User.new("faculty", 100001, username="EKrabappel"))
        assert user.username == "ekrabappel"
        assert store.get_staff_by_username("EKRABAPPEL").id == user.id
        with pytest.raises(ConstraintViolation):
            store.create_user(User.new("admin", 100001, username="ekrabappel"))

    def test_staff_lookup_ignores_other_roles(self, store):
        store.create_user(User.new("student", 100001, username="lisa"))
        assert store.get_staff_by_username("lisa") is None

    def test_memberships_primary_first(self, store):
        user = store.create_user(User.new("parent", 100001))
        store.add_membership(user.id, 100002, "parent")
        memberships = store.list_memberships(user.id)
        assert [(m.organization_id, m.is_primary) for m in memberships] == [
            (100001, True),
            (100002, False),
        ]
        assert memberships[1].organization_name == "Shelbyville Academy"

    def test_memberships_skip_inactive_orgs(self, store):
        store.create_organization(100003, "Closed School", is_active=False)
        user = store.create_user(User.new("parent", 100001))
        store.add_membership(user.id, 100003, "parent")
        assert len(store.list_memberships(user.id)) == 1

    def test_active_children_by_org(self, store):
        parent = store.create_user(User.new("parent", 100001))
        a = store.create_user(User.new("student", 100001, parent_id=parent.id))
        b = store.create_user(User.new("student", 100002, parent_id=parent.id))
        c = store.create_user(User.new("student", 100001, parent_id=parent.id, is_active=False))
        assert [u.id for u in store.list_active_children(parent.id, 100001)] == [a.id]
        assert {u.id for u in store.list_active_children(parent.id)} == {a.id, b.id}
        assert c.id not in {u.id for u in store.list_active_children(parent.id)}

    def test_failed_login_bookkeeping(self, store):
        user = store.create_user(User.new("faculty", 100001, username="ekrabappel"))
        until = datetime.now(timezone.utc) + timedelta(minutes=30)
        store.record_failed_login(user.id, 3, until)
        assert store.get_user(user.id).is_locked()
        store.reset_failed_logins(user.id)
        refreshed = store.get_user(user.id)
        assert refreshed.failed_attempts == 0
        assert not refreshed.is_locked()

    def test_inactive_user_is_hidden_from_active_lookup(self, store):
        user = store.create_user(User.new("student", 100001))
        store.set_user_active(user.id, False)
        assert store.get_active_user(user.id) is None
        assert store.get_user(user.id) is not None


class TestMemoryCache:
    async def test_values_expire(self, cache, clock):
        await cache.set("k", "v", 10)
        assert await cache.get("k") == "v"
        clock.now += 10
        assert await cache.get("k") is None

    async def test_sets_expire(self, cache, clock):
        await cache.sadd("s", "a", "b", ttl_seconds=5)
        assert await cache.smembers("s") == {"a", "b"}
        clock.now += 5
        assert await cache.smembers("s") == set()

    async def test_json_round_trip(self, cache):
        await cache.set_json("j", {"id": "u1", "org_id": 1})
        assert await cache.get_json("j") == {"id": "u1", "org_id": 1}
        await cache.set("bad", "{nope")
        assert await cache.get_json("bad") is None

    async def test_window_counters_keep_first_ttl(self, cache, clock):
        assert await cache.incr_window_counters([("c", 1)], 60) == [1]
        clock.now += 30
        assert await cache.incr_window_counters([("c", 2)], 60) == [3]
        assert cache.ttl("c") == pytest.approx(30)

    async def test_checked_counters_do_not_count_rejections(self, cache):
        keys = ["r", "f", "s"]
        rejected, values = await cache.checked_incr_window_counters(
            keys, [0, 0, 0], [1, 2, 100], [5, 10, 50], 3600
        )
        assert rejected == 3
        assert values == [0, 0, 0]
        assert await cache.get("r") is None

        rejected, values = await cache.checked_incr_window_counters(
            keys, [0, 0, 0], [1, 2, 40], [5, 10, 50], 3600
        )
        assert rejected == 0
        assert values == [1, 2, 40]

    async def test_checked_counters_flush_pending_on_rejection(self, cache):
        rejected, values = await cache.checked_incr_window_counters(
            ["r"], [2], [1], [2], 3600
        )
        assert rejected == 1
        assert values == [2]
        assert await cache.get("r") == "2"

    async def test_otp_attempt_statuses(self, cache):
        assert await cache.atomic_otp_attempt("otp", "att", "123456", 3) == (OTP_MISSING, 0)
        await cache.store_otp("otp", "att", "123456", 100)
        assert await cache.atomic_otp_attempt("otp", "att", "000000", 3) == (OTP_MISMATCH, 1)
        assert await cache.atomic_otp_attempt("otp", "att", "123456", 3) == (OTP_VERIFIED, 1)
        assert await cache.get("otp") is None

        await cache.store_otp("otp", "att", "123456", 100)
        await cache.atomic_otp_attempt("otp", "att", "000000", 3)
        await cache.atomic_otp_attempt("otp", "att", "000000", 3)
        assert await cache.atomic_otp_attempt("otp", "att", "000000", 3) == (OTP_EXHAUSTED, 3)
        assert await cache.get("att") is None


class _FailingConnection:
    def __init__(self, exc):
        self.exc = exc

    def execute(self, *args, **kwargs):
        raise self.exc


class _FailingPool:
    def __init__(self, exc):
        self.exc = exc

    @contextmanager
    def connection(self):
        yield _FailingConnection(self.exc)


def _postgres_with(exc) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = _FailingPool(exc)
    store.logger = get_logger(__name__)
    return store


class TestPostgresErrorMapping:
    def test_query_failure_is_store_unavailable(self):
        store = _postgres_with(psycopg.OperationalError("server closed the connection"))
        with pytest.raises(StoreUnavailable):
            store.get_active_user("u1")

    def test_unique_violation_is_constraint(self):
        store = _postgres_with(psycopg.errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            store.create_user(User.new("student", 100001, phone_number="9876543210"))

    def test_write_failure_is_store_unavailable(self):
        store = _postgres_with(psycopg.OperationalError("timeout"))
        with pytest.raises(StoreUnavailable):
            store.reset_failed_logins("u1")


class TestRedisOtpScript:
    def test_codes_are_compared_by_digest(self):
        script = RedisCache._OTP_ATTEMPT_SCRIPT
        assert "redis.sha1hex(stored) == redis.sha1hex(ARGV[1])" in script
        assert "stored == ARGV[1]" not in script
