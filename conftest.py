"""
Shared pytest fixtures for the access engine tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from tiervault.access import (
    AccessSettings,
    AuthorizationEngine,
    MemoryDatabase,
    SQLiteDatabase,
)

TEST_SECRET = "test-secret-key-not-for-production-0123456789"


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings():
    return AccessSettings(jwt_secret=TEST_SECRET, bcrypt_rounds=4, storage_timeout=2.0)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc))


@pytest.fixture(params=["memory", "sqlite"])
def engine(request, settings, clock, tmp_path):
    """Engine over each storage backend."""
    if request.param == "memory":
        return AuthorizationEngine.in_memory(settings, clock=clock)
    return AuthorizationEngine.open(
        tmp_path / "access.db", tmp_path / "uploads", settings, clock=clock
    )


@pytest.fixture(params=["memory", "sqlite"])
def database(request, tmp_path):
    """Each store implementation, empty."""
    if request.param == "memory":
        return MemoryDatabase(timeout=2.0)
    return SQLiteDatabase(tmp_path / "store.db", timeout=2.0)


@pytest.fixture
def alice(engine):
    """Root user (tier 1, Ops)."""
    return engine.register({
        "username": "alice",
        "password": "Passw0rd!",
        "email": "a@x.com",
        "full_name": "Alice",
        "department": "Ops",
    }).user


def register_with_code(engine, username, code, full_name=None):
    return engine.register({
        "username": username,
        "password": "Passw0rd!",
        "email": f"{username}@x.com",
        "full_name": full_name or username.title(),
        "access_code": code,
    }).user


def invite(engine, issuer, tier, username, department="Ops", full_name=None):
    """Have ``issuer`` mint a single-use code and register ``username`` with it."""
    code = engine.generate_access_code(
        issuer.user_id, {"target_tier_level": tier, "department": department}
    )
    return register_with_code(engine, username, code.code, full_name)
