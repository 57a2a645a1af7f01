"""Refresh-token rotation with reuse detection."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from authbackend.config import settings
from authbackend.core.exceptions import (
    MalformedTokenError,
    ReplayDetectedError,
    SessionInvalidError,
    TokenExpiredError,
    TokenInvalidError,
)
from authbackend.core.metrics import AUTH_EVENTS
from authbackend.core.tokens import ACCESS, REFRESH, Clock, TokenCodec, utcnow
from authbackend.services.session_cache import CasResult, RefreshSession, SessionCache

logger = logging.getLogger(__name__)


class FamilyStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FamilyState:
    status: FamilyStatus
    generation: Optional[int] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_credential: str
    expires_in: int
    family_id: str
    generation: int


@dataclass(frozen=True)
class PresentedRefresh:
    """Claims carried by a refresh credential."""

    user_id: str
    family_id: str
    generation: int
    session_id: str


def _new_id() -> str:
    return secrets.token_urlsafe(24)


class RotationEngine:
    """
    State machine over refresh families.

    ACTIVE(generation) --rotate--> ACTIVE(generation + 1)
    ACTIVE --stale generation / lost race / logout--> REVOKED
    ACTIVE --lifetime elapsed--> EXPIRED

    REVOKED and EXPIRED are absorbing; a new login starts a new family.
    """

    def __init__(
        self,
        codec: TokenCodec,
        cache: SessionCache,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        family_max_lifetime: timedelta,
        clock_skew_seconds: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        self.codec = codec
        self.cache = cache
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.family_max_lifetime = family_max_lifetime
        self.skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock

    def start_family(self, user_id: str) -> TokenPair:
        """Open a new family at generation 0 and mint its first pair."""
        now = self._clock()
        session = RefreshSession(
            session_id=_new_id(),
            user_id=user_id,
            family_id=_new_id(),
            generation=0,
            expires_at=now + min(self.refresh_ttl, self.family_max_lifetime),
            created_at=now,
        )
        pair = self._mint(session, now)
        self.cache.put(session, self._cache_ttl(session, now))
        AUTH_EVENTS.labels("family_started").inc()
        return pair

    def rotate(self, refresh_credential: str) -> TokenPair:
        """
        Exchange a refresh credential for the next pair in its family.

        The new pair only becomes valid once compare_and_advance commits, so
        an aborted request either leaves the family at the old generation or
        at the new one, never in between.

        Raises:
            SessionInvalidError: family unknown, revoked or expired
            ReplayDetectedError: superseded credential or lost rotation race
            MalformedTokenError, TokenInvalidError: credential tampered with
        """
        try:
            presented = self.decode(refresh_credential)
        except TokenExpiredError:
            AUTH_EVENTS.labels("refresh_expired").inc()
            raise SessionInvalidError()
        except (MalformedTokenError, TokenInvalidError) as exc:
            AUTH_EVENTS.labels("refresh_rejected").inc()
            logger.warning("Rejected refresh credential: %s", exc.reason)
            raise

        now = self._clock()
        current = self.cache.get(presented.family_id)
        if current is None or current.revoked or current.is_expired(now, self.skew):
            AUTH_EVENTS.labels("refresh_session_invalid").inc()
            raise SessionInvalidError()

        if current.generation != presented.generation or current.user_id != presented.user_id:
            self._replay(presented, reason="stale generation", current_generation=current.generation)

        expires_at = min(now + self.refresh_ttl, current.created_at + self.family_max_lifetime)
        if expires_at <= now:
            AUTH_EVENTS.labels("refresh_session_invalid").inc()
            raise SessionInvalidError()

        successor = current.advance(session_id=_new_id(), expires_at=expires_at)
        pair = self._mint(successor, now)

        result = self.cache.compare_and_advance(
            presented.family_id,
            presented.generation,
            successor,
            self._cache_ttl(successor, now),
        )
        if result is CasResult.CONFLICT:
            self._replay(presented, reason="lost rotation race")

        AUTH_EVENTS.labels("refresh_rotated").inc()
        return pair

    def revoke(self, family_id: str) -> None:
        """Revoke a family; repeated calls are no-ops."""
        if self.cache.revoke(family_id):
            logger.info("Refresh family revoked family_id=%s", family_id)

    def revoke_credential(self, refresh_credential: str) -> Optional[str]:
        """
        Revoke the family a refresh credential belongs to.

        Expired credentials still identify their family; undecodable ones are
        ignored. Returns the family id when one was found.
        """
        try:
            presented = self.decode(refresh_credential, verify_expiry=False)
        except (MalformedTokenError, TokenInvalidError) as exc:
            logger.info("Ignoring undecodable credential on logout: %s", exc.reason)
            return None
        self.revoke(presented.family_id)
        return presented.family_id

    def revoke_user(self, user_id: str) -> int:
        count = self.cache.revoke_user(user_id)
        if count:
            logger.warning("Revoked %d refresh families for user_id=%s", count, user_id)
        return count

    def state(self, family_id: str) -> FamilyState:
        current = self.cache.get(family_id)
        if current is None:
            return FamilyState(FamilyStatus.UNKNOWN)
        if current.revoked:
            return FamilyState(FamilyStatus.REVOKED, current.generation)
        if current.is_expired(self._clock(), self.skew):
            return FamilyState(FamilyStatus.EXPIRED, current.generation)
        return FamilyState(FamilyStatus.ACTIVE, current.generation)

    def decode(self, refresh_credential: str, verify_expiry: bool = True) -> PresentedRefresh:
        claims = self.codec.verify(refresh_credential, expected_type=REFRESH, verify_expiry=verify_expiry)
        family_id = claims.extra.get("fam")
        generation = claims.extra.get("gen")
        session_id = claims.extra.get("sid")
        if not isinstance(family_id, str) or not isinstance(session_id, str):
            raise MalformedTokenError()
        if isinstance(generation, bool) or not isinstance(generation, int) or generation < 0:
            raise MalformedTokenError()
        return PresentedRefresh(
            user_id=claims.subject,
            family_id=family_id,
            generation=generation,
            session_id=session_id,
        )

    def _cache_ttl(self, session: RefreshSession, now: datetime) -> timedelta:
        # Entry outlives expires_at by the skew so is_expired decides, not eviction
        return session.expires_at - now + self.skew

    def _mint(self, session: RefreshSession, now: datetime) -> TokenPair:
        access_token = self.codec.issue(session.user_id, self.access_ttl, token_type=ACCESS)
        refresh_credential = self.codec.issue(
            session.user_id,
            session.expires_at - now,
            token_type=REFRESH,
            claims={
                "fam": session.family_id,
                "gen": session.generation,
                "sid": session.session_id,
            },
        )
        return TokenPair(
            access_token=access_token,
            refresh_credential=refresh_credential,
            expires_in=int(self.access_ttl.total_seconds()),
            family_id=session.family_id,
            generation=session.generation,
        )

    def _replay(self, presented: PresentedRefresh, reason: str, current_generation: Optional[int] = None) -> None:
        self.cache.revoke(presented.family_id)
        AUTH_EVENTS.labels("replay_detected").inc()
        logger.warning(
            "Refresh replay detected (%s) family_id=%s user_id=%s presented_generation=%d current_generation=%s; family revoked",
            reason,
            presented.family_id,
            presented.user_id,
            presented.generation,
            current_generation,
        )
        raise ReplayDetectedError()


def build_rotation_engine(codec: TokenCodec, cache: SessionCache) -> RotationEngine:
    """Engine configured from process settings."""
    return RotationEngine(
        codec,
        cache,
        access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_ttl=timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES),
        family_max_lifetime=timedelta(hours=settings.REFRESH_FAMILY_MAX_LIFETIME_HOURS),
        clock_skew_seconds=settings.CLOCK_SKEW_SECONDS,
    )
