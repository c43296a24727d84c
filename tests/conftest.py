import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the runtime before any imports that might initialize it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Counters must not leak between tests, so the suite runs on the in-process cache
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from schoolgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from schoolgate.storage.models import User  # noqa: E402

ORG_ID = 100001
OTHER_ORG_ID = 100002
STUDENT_PHONE = "9876543210"
PARENT_PHONE = "9123456780"
FACULTY_PASSWORD = "Correct-Horse-Battery-1"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    runtime = reset_runtime_for_tests()
    yield runtime
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


@pytest.fixture
def school(runtime):
    """Seed one school with a parent, their child, a student and a faculty member."""
    store = runtime.store
    store.create_organization(ORG_ID, "Springfield High")
    store.create_organization(OTHER_ORG_ID, "Shelbyville Academy")

    parent = store.create_user(
        User.new("parent", ORG_ID, full_name="Marge Simpson", phone_number=PARENT_PHONE)
    )
    child = store.create_user(
        User.new(
            "student",
            ORG_ID,
            full_name="Lisa Simpson",
            register_number="SH-0042",
            parent_id=parent.id,
        )
    )
    student = store.create_user(
        User.new(
            "student",
            ORG_ID,
            full_name="Milhouse Van Houten",
            phone_number=STUDENT_PHONE,
            register_number="SH-0043",
        )
    )
    faculty = store.create_user(
        User.new(
            "faculty",
            ORG_ID,
            full_name="Edna Krabappel",
            username="ekrabappel",
            password_hash=runtime.auth.hash_password(FACULTY_PASSWORD),
        )
    )
    return {
        "parent": parent,
        "child": child,
        "student": student,
        "faculty": faculty,
    }


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
