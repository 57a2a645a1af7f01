"""Signed token codec - JWT issuance and verification with a rotating keyset"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from authbackend.config import settings
from authbackend.core.exceptions import (
    MalformedTokenError,
    TokenExpiredError,
    TokenInvalidError,
)

ACCESS = "access"
REFRESH = "refresh"

_RESERVED_CLAIMS = {"sub", "iat", "exp", "typ", "jti"}

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: str


@dataclass(frozen=True)
class SigningKeyset:
    """Active signing key plus keys still accepted for verification."""

    active: SigningKey
    previous: Tuple[SigningKey, ...] = ()

    def lookup(self, kid: str) -> Optional[SigningKey]:
        if kid == self.active.kid:
            return self.active
        for key in self.previous:
            if key.kid == kid:
                return key
        return None

    def rotated(self, new_key: SigningKey, keep_previous: int = 1) -> "SigningKeyset":
        """Return a keyset signing with ``new_key`` and still verifying the old ones."""
        retained = (self.active,) + self.previous
        retained = tuple(k for k in retained if k.kid != new_key.kid)[:keep_previous]
        return SigningKeyset(active=new_key, previous=retained)

    @classmethod
    def from_settings(cls) -> "SigningKeyset":
        return cls(
            active=SigningKey(settings.SIGNING_KEY_ID, settings.SECRET_KEY),
            previous=tuple(SigningKey(kid, secret) for kid, secret in settings.get_previous_signing_keys()),
        )


@dataclass(frozen=True)
class TokenClaims:
    """Verified token contents."""

    subject: str
    issued_at: datetime
    expires_at: datetime
    token_type: str
    token_id: str
    extra: Dict[str, Any] = field(default_factory=dict)


class TokenCodec:
    """
    Sign and verify compact self-contained tokens.

    Failures are reported as distinct exceptions so callers can tell an
    expired token (re-authenticate) from a tampered one (log it):

    - MalformedTokenError: not decodable, or required claims missing
    - TokenInvalidError: signature mismatch, unknown key id or wrong type
    - TokenExpiredError: ``exp`` passed by more than the clock skew allowance
    """

    def __init__(
        self,
        keyset: SigningKeyset,
        algorithm: str = "HS256",
        clock_skew_seconds: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        self._keyset = keyset
        self._algorithm = algorithm
        self._skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock
        self._rotate_lock = threading.Lock()

    @property
    def keyset(self) -> SigningKeyset:
        return self._keyset

    def rotate_key(self, kid: str, secret: str, keep_previous: int = 1) -> SigningKeyset:
        """Swap the active key atomically; the old one keeps verifying for the overlap window."""
        with self._rotate_lock:
            self._keyset = self._keyset.rotated(SigningKey(kid, secret), keep_previous=keep_previous)
            return self._keyset

    def retire_keys(self, kids: Iterable[str]) -> SigningKeyset:
        """End the overlap window for the given verification-only keys."""
        retired = set(kids)
        with self._rotate_lock:
            current = self._keyset
            self._keyset = SigningKeyset(
                active=current.active,
                previous=tuple(k for k in current.previous if k.kid not in retired),
            )
            return self._keyset

    def issue(
        self,
        subject: str,
        ttl: timedelta,
        token_type: str = ACCESS,
        claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a signed token

        Args:
            subject: Value of the ``sub`` claim
            ttl: Lifetime from now
            token_type: ``typ`` claim, checked again on verify
            claims: Additional non-reserved claims

        Returns:
            str: Encoded JWT
        """
        now = self._clock()
        to_encode: Dict[str, Any] = dict(claims or {})
        to_encode.update({
            "sub": subject,
            "typ": token_type,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": secrets.token_urlsafe(16),
        })
        keyset = self._keyset
        return jwt.encode(
            to_encode,
            keyset.active.secret,
            algorithm=self._algorithm,
            headers={"kid": keyset.active.kid},
        )

    def verify(
        self,
        token: str,
        expected_type: str = ACCESS,
        verify_expiry: bool = True,
    ) -> TokenClaims:
        """
        Decode and verify a token

        Args:
            token: Encoded JWT
            expected_type: Required ``typ`` claim
            verify_expiry: Skip only for revocation paths that accept stale tokens

        Returns:
            TokenClaims: Verified claims
        """
        if not isinstance(token, str) or not token:
            raise MalformedTokenError()

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise MalformedTokenError() from exc

        key = self._keyset.lookup(header.get("kid") or "")
        if key is None or header.get("alg") != self._algorithm:
            raise TokenInvalidError()

        try:
            payload = jwt.decode(
                token,
                key.secret,
                algorithms=[self._algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "verify_aud": False,
                },
            )
        except JWTClaimsError as exc:
            raise MalformedTokenError() from exc
        except JWTError as exc:
            raise TokenInvalidError() from exc

        claims = self._parse_claims(payload)

        if claims.token_type != expected_type:
            raise TokenInvalidError()

        if verify_expiry and self._clock() > claims.expires_at + self._skew:
            raise TokenExpiredError()

        return claims

    @staticmethod
    def _parse_claims(payload: Dict[str, Any]) -> TokenClaims:
        subject = payload.get("sub")
        token_type = payload.get("typ")
        token_id = payload.get("jti")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not subject:
            raise MalformedTokenError()
        if not isinstance(token_type, str) or not isinstance(token_id, str):
            raise MalformedTokenError()
        # bool is an int subclass
        for value in (iat, exp):
            if isinstance(value, bool) or not isinstance(value, int):
                raise MalformedTokenError()

        return TokenClaims(
            subject=subject,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_type=token_type,
            token_id=token_id,
            extra={k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS},
        )


def build_token_codec() -> TokenCodec:
    """Codec configured from process settings."""
    return TokenCodec(
        SigningKeyset.from_settings(),
        algorithm=settings.ALGORITHM,
        clock_skew_seconds=settings.CLOCK_SKEW_SECONDS,
    )
