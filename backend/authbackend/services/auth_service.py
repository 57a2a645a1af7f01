"""Auth service - login, refresh and logout for the transport layer"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from authbackend.core.exceptions import InvalidCredentialsError, ResourceNotFoundError
from authbackend.core.metrics import AUTH_EVENTS
from authbackend.core.security import PasswordHasher, password_hasher
from authbackend.core.tokens import ACCESS, TokenClaims
from authbackend.models.user import User
from authbackend.services.audit_service import AuditService, audit_service
from authbackend.services.credential_store import CredentialStore, credential_store
from authbackend.services.rotation_engine import RotationEngine, TokenPair
import logging

logger = logging.getLogger(__name__)


class AuthService:
    """Facade composing the credential store, hasher and rotation engine"""

    def __init__(
        self,
        engine: RotationEngine,
        hasher: PasswordHasher = password_hasher,
        store: CredentialStore = credential_store,
        audit: AuditService = audit_service,
    ) -> None:
        self.engine = engine
        self.hasher = hasher
        self.store = store
        self.audit = audit
        # Computed up front so the first unknown-identifier login is not faster
        _ = self.hasher.dummy_hash

    def register(self, db: Session, identifier: str, plaintext: str, ip_address: Optional[str] = None) -> User:
        """
        Create an account

        Raises:
            DuplicateIdentifierError: Identifier already taken
        """
        user = self.store.create(db, identifier, self.hasher.hash(plaintext))
        self.audit.log_event(db, user_id=user.id, action="account.registered", ip_address=ip_address)
        return user

    def login(self, db: Session, identifier: str, plaintext: str) -> TokenPair:
        """
        Authenticate with identifier and password and open a refresh family

        A hash verification runs whether or not the identifier exists, so the
        response time does not reveal which accounts are registered.

        Raises:
            InvalidCredentialsError: Unknown identifier, wrong password or disabled account
            StoreUnavailableError: Credential store unreachable
        """
        try:
            user: Optional[User] = self.store.lookup(db, identifier)
        except ResourceNotFoundError:
            user = None

        hash_blob = user.password_hash if user is not None else self.hasher.dummy_hash
        verified = self.hasher.verify(plaintext, hash_blob)

        if user is None or not verified or not user.is_active:
            AUTH_EVENTS.labels("login_failed").inc()
            raise InvalidCredentialsError()

        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_hash(db, user.id, self.hasher.hash(plaintext), password_changed=False)
            logger.info("Upgraded password hash for user_id=%s", user.id)

        self.store.record_login(db, user)
        pair = self.engine.start_family(user.id)
        AUTH_EVENTS.labels("login_succeeded").inc()
        logger.info("User authenticated: %s", user.id)
        return pair

    def refresh(self, refresh_credential: str) -> TokenPair:
        """
        Rotate a refresh credential

        Raises:
            SessionInvalidError: Family expired, revoked or unknown
            ReplayDetectedError: Credential already used; the family is now revoked
        """
        return self.engine.rotate(refresh_credential)

    def logout(self, refresh_credential: str) -> None:
        """Revoke the credential's family; unknown or repeated logouts are fine"""
        self.engine.revoke_credential(refresh_credential)

    def authenticate(self, access_token: str) -> TokenClaims:
        """Verify an access token presented in the Authorization header"""
        return self.engine.codec.verify(access_token, expected_type=ACCESS)

    def change_password(
        self,
        db: Session,
        user_id: str,
        current_plaintext: str,
        new_plaintext: str,
        ip_address: Optional[str] = None,
    ) -> int:
        """
        Replace a password after checking the current one

        Every refresh family of the user is revoked.

        Returns:
            Number of families revoked
        """
        user = self.store.get(db, user_id)
        if not self.hasher.verify(current_plaintext, user.password_hash):
            AUTH_EVENTS.labels("password_change_failed").inc()
            raise InvalidCredentialsError()

        self.store.update_hash(db, user.id, self.hasher.hash(new_plaintext))
        revoked = self.engine.revoke_user(user.id)
        self.audit.log_event(
            db,
            user_id=user.id,
            action="account.password_changed",
            ip_address=ip_address,
            metadata={"revoked_families": revoked},
        )
        return revoked

    def remove_account(self, db: Session, user_id: str, ip_address: Optional[str] = None) -> int:
        """
        Delete an account and invalidate all of its sessions

        Returns:
            Number of families revoked
        """
        revoked = self.engine.revoke_user(user_id)
        self.store.delete(db, user_id)
        # A login racing the delete may have opened one more family
        revoked += self.engine.revoke_user(user_id)
        self.audit.log_event(
            db,
            user_id=None,
            action="account.removed",
            ip_address=ip_address,
            metadata={"user_id": user_id, "revoked_families": revoked},
        )
        logger.warning("Account removed user_id=%s revoked_families=%d", user_id, revoked)
        return revoked
