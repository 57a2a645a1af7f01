"""Refresh-session cache: live refresh families and revocation markers."""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterator, Optional, Set, Tuple

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authbackend.config import settings
from authbackend.core.exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)


class CasResult(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class RefreshSession:
    """Current head of one refresh family."""

    session_id: str
    user_id: str
    family_id: str
    generation: int
    expires_at: datetime
    created_at: datetime
    revoked: bool = False

    def is_expired(self, now: datetime, skew: timedelta = timedelta(0)) -> bool:
        return now > self.expires_at + skew

    def advance(self, session_id: str, expires_at: datetime) -> "RefreshSession":
        return replace(
            self,
            session_id=session_id,
            generation=self.generation + 1,
            expires_at=expires_at,
            revoked=False,
        )

    def to_json(self) -> str:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "RefreshSession":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            family_id=data["family_id"],
            generation=int(data["generation"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            revoked=bool(data.get("revoked", False)),
        )


def _ttl_seconds(ttl: timedelta) -> int:
    # Redis rejects zero or negative expirations; never round below the TTL
    return max(1, math.ceil(ttl.total_seconds()))


class SessionCache(ABC):
    """
    Volatile store of refresh families keyed by family_id.

    Entries vanish on their own once the TTL given to ``put`` or
    ``compare_and_advance`` elapses. ``compare_and_advance`` is the only
    mutation that moves a family forward and is atomic per family.
    """

    @abstractmethod
    def put(self, session: RefreshSession, ttl: timedelta) -> None:
        ...

    @abstractmethod
    def get(self, family_id: str) -> Optional[RefreshSession]:
        ...

    @abstractmethod
    def revoke(self, family_id: str) -> bool:
        """Mark a family revoked; returns False when it is not cached."""

    @abstractmethod
    def compare_and_advance(
        self,
        family_id: str,
        expected_generation: int,
        new_session: RefreshSession,
        ttl: timedelta,
    ) -> CasResult:
        ...

    @abstractmethod
    def revoke_user(self, user_id: str) -> int:
        """Revoke every cached family of a user; returns how many were live."""

    @abstractmethod
    def ping(self) -> bool:
        ...


class InMemorySessionCache(SessionCache):
    """Process-local cache for single-node deployments and tests."""

    SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(self, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._monotonic = monotonic
        self._entries: Dict[str, Tuple[RefreshSession, float]] = {}
        self._user_families: Dict[str, Set[str]] = {}
        self._last_sweep = monotonic()

    def _live(self, family_id: str, now: float) -> Optional[Tuple[RefreshSession, float]]:
        entry = self._entries.get(family_id)
        if entry is None:
            return None
        if entry[1] <= now:
            self._drop(family_id, entry[0].user_id)
            return None
        return entry

    def _drop(self, family_id: str, user_id: str) -> None:
        self._entries.pop(family_id, None)
        families = self._user_families.get(user_id)
        if families is not None:
            families.discard(family_id)
            if not families:
                del self._user_families[user_id]

    def _store(self, session: RefreshSession, deadline: float) -> None:
        self._entries[session.family_id] = (session, deadline)
        self._user_families.setdefault(session.user_id, set()).add(session.family_id)

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        expired = [(fid, s.user_id) for fid, (s, deadline) in self._entries.items() if deadline <= now]
        for family_id, user_id in expired:
            self._drop(family_id, user_id)

    def put(self, session: RefreshSession, ttl: timedelta) -> None:
        now = self._monotonic()
        with self._lock:
            self._sweep(now)
            self._store(session, now + ttl.total_seconds())

    def get(self, family_id: str) -> Optional[RefreshSession]:
        with self._lock:
            entry = self._live(family_id, self._monotonic())
            return entry[0] if entry else None

    def revoke(self, family_id: str) -> bool:
        with self._lock:
            entry = self._live(family_id, self._monotonic())
            if entry is None:
                return False
            session, deadline = entry
            if not session.revoked:
                self._entries[family_id] = (replace(session, revoked=True), deadline)
            return True

    def compare_and_advance(
        self,
        family_id: str,
        expected_generation: int,
        new_session: RefreshSession,
        ttl: timedelta,
    ) -> CasResult:
        now = self._monotonic()
        with self._lock:
            entry = self._live(family_id, now)
            if entry is None:
                return CasResult.CONFLICT
            current = entry[0]
            if current.revoked or current.generation != expected_generation:
                return CasResult.CONFLICT
            self._store(new_session, now + ttl.total_seconds())
            return CasResult.OK

    def revoke_user(self, user_id: str) -> int:
        with self._lock:
            now = self._monotonic()
            revoked = 0
            for family_id in list(self._user_families.get(user_id, ())):
                entry = self._live(family_id, now)
                if entry is None:
                    continue
                session, deadline = entry
                if not session.revoked:
                    self._entries[family_id] = (replace(session, revoked=True), deadline)
                    revoked += 1
            return revoked

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisSessionCache(SessionCache):
    """
    Redis-backed cache shared by all API workers.

    Layout:
      auth:family:{family_id}      JSON RefreshSession, EX = refresh lifetime
      auth:user_families:{user_id} set of family ids, TTL >= longest member
    """

    FAMILY_PREFIX = "auth:family:"
    USER_PREFIX = "auth:user_families:"

    # KEYS: family key, user index key
    # ARGV: session json, ttl seconds, family id, family key prefix
    # Index members whose family key has expired are dropped on the way.
    _PUT_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
for _, member in ipairs(redis.call('SMEMBERS', KEYS[2])) do
  if redis.call('EXISTS', ARGV[4] .. member) == 0 then
    redis.call('SREM', KEYS[2], member)
  end
end
redis.call('SADD', KEYS[2], ARGV[3])
if redis.call('TTL', KEYS[2]) < tonumber(ARGV[2]) then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end
return 1
"""

    # KEYS: family key, user index key
    # ARGV: expected generation, new session json, ttl seconds, family id
    _CAS_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local current = cjson.decode(raw)
if current['revoked'] then
  return 0
end
if tonumber(current['generation']) ~= tonumber(ARGV[1]) then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
redis.call('SADD', KEYS[2], ARGV[4])
if redis.call('TTL', KEYS[2]) < tonumber(ARGV[3]) then
  redis.call('EXPIRE', KEYS[2], ARGV[3])
end
return 1
"""

    # KEYS: family key
    # Returns 0 when missing, 1 when newly revoked, 2 when already revoked
    _REVOKE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local current = cjson.decode(raw)
if current['revoked'] then
  return 2
end
current['revoked'] = true
redis.call('SET', KEYS[1], cjson.encode(current), 'KEEPTTL')
return 1
"""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client
        self._put_script = client.register_script(self._PUT_SCRIPT)
        self._cas_script = client.register_script(self._CAS_SCRIPT)
        self._revoke_script = client.register_script(self._REVOKE_SCRIPT)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        socket_timeout: float = 2.0,
        max_connections: int = 50,
    ) -> "RedisSessionCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            max_connections=max_connections,
        )
        return cls(client)

    @contextmanager
    def _cache_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("Session cache unavailable during %s: %s", operation, exc.__class__.__name__)
            raise CacheUnavailableError() from exc

    def _family_key(self, family_id: str) -> str:
        return f"{self.FAMILY_PREFIX}{family_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.USER_PREFIX}{user_id}"

    def put(self, session: RefreshSession, ttl: timedelta) -> None:
        with self._cache_errors("put"):
            self._put_script(
                keys=[self._family_key(session.family_id), self._user_key(session.user_id)],
                args=[session.to_json(), _ttl_seconds(ttl), session.family_id, self.FAMILY_PREFIX],
            )

    def get(self, family_id: str) -> Optional[RefreshSession]:
        with self._cache_errors("get"):
            raw = self.client.get(self._family_key(family_id))
        if raw is None:
            return None
        return RefreshSession.from_json(raw)

    def revoke(self, family_id: str) -> bool:
        with self._cache_errors("revoke"):
            result = self._revoke_script(keys=[self._family_key(family_id)], args=[])
        return int(result) != 0

    def compare_and_advance(
        self,
        family_id: str,
        expected_generation: int,
        new_session: RefreshSession,
        ttl: timedelta,
    ) -> CasResult:
        with self._cache_errors("compare_and_advance"):
            result = self._cas_script(
                keys=[self._family_key(family_id), self._user_key(new_session.user_id)],
                args=[expected_generation, new_session.to_json(), _ttl_seconds(ttl), family_id],
            )
        return CasResult.OK if int(result) == 1 else CasResult.CONFLICT

    def revoke_user(self, user_id: str) -> int:
        with self._cache_errors("revoke_user"):
            user_key = self._user_key(user_id)
            revoked = 0
            gone = []
            for family_id in self.client.smembers(user_key):
                result = int(self._revoke_script(keys=[self._family_key(family_id)], args=[]))
                if result == 1:
                    revoked += 1
                elif result == 0:
                    gone.append(family_id)
            if gone:
                self.client.srem(user_key, *gone)
        return revoked

    def ping(self) -> bool:
        with self._cache_errors("ping"):
            return bool(self.client.ping())


def build_session_cache() -> SessionCache:
    """Session cache selected by SESSION_CACHE_BACKEND."""
    backend = settings.SESSION_CACHE_BACKEND.lower().strip()
    if backend == "memory":
        logger.warning("Using in-process session cache; refresh state is not shared between workers.")
        return InMemorySessionCache()
    if backend == "redis":
        return RedisSessionCache.from_url(
            settings.REDIS_URL,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            max_connections=settings.REDIS_POOL_MAX_CONNECTIONS,
        )
    raise RuntimeError(f"Unknown SESSION_CACHE_BACKEND: {settings.SESSION_CACHE_BACKEND}")
