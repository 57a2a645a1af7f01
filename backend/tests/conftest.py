import os
import tempfile
from datetime import datetime, timedelta, timezone

# Settings are read at import time, so the test environment goes in first.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SESSION_CACHE_BACKEND", "memory")
os.environ.setdefault("DB_INIT_MODE", "off")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "authbackend-tests", "app.log"))
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from authbackend.core.database import Base
from authbackend.core.security import PasswordHasher
from authbackend.core.tokens import SigningKey, SigningKeyset, TokenCodec
from authbackend.services.auth_service import AuthService
from authbackend.services.rotation_engine import RotationEngine
from authbackend.services.session_cache import InMemorySessionCache


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start=None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)
        self._elapsed = 0.0

    def __call__(self):
        return self.now

    def monotonic(self):
        return self._elapsed

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        self._elapsed += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def keyset():
    return SigningKeyset(active=SigningKey("k1", "test-secret-key-with-enough-entropy-0001"))


@pytest.fixture
def codec(keyset, clock):
    return TokenCodec(keyset, algorithm="HS256", clock_skew_seconds=5, clock=clock)


@pytest.fixture
def cache(clock):
    return InMemorySessionCache(monotonic=clock.monotonic)


@pytest.fixture
def rotation(codec, cache, clock):
    return RotationEngine(
        codec,
        cache,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        family_max_lifetime=timedelta(days=30),
        clock_skew_seconds=5,
        clock=clock,
    )


@pytest.fixture
def auth_service(rotation, hasher):
    return AuthService(rotation, hasher=hasher)
