"""Credential store - durable identity records"""

from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authbackend.core.database import store_errors
from authbackend.core.exceptions import DuplicateIdentifierError, ResourceNotFoundError
from authbackend.models.user import User
import logging

logger = logging.getLogger(__name__)


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


class CredentialStore:
    """
    Single-record persistence for user identities.

    Every write commits or rolls back on its own. Connectivity problems come
    out as StoreUnavailableError and are never reported as a missing record.
    """

    @staticmethod
    def lookup(db: Session, identifier: str) -> User:
        """
        Find a user by login identifier

        Raises:
            ResourceNotFoundError: No such identifier
        """
        with store_errors(db):
            user = db.query(User).filter(User.identifier == normalize_identifier(identifier)).first()
        if user is None:
            raise ResourceNotFoundError("User")
        return user

    @staticmethod
    def get(db: Session, user_id: str) -> User:
        """Get user by ID"""
        with store_errors(db):
            user = db.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User")
        return user

    @staticmethod
    def create(db: Session, identifier: str, password_hash: str) -> User:
        """
        Create new user

        Args:
            db: Database session
            identifier: Login identifier, stored lower-cased
            password_hash: Output of the password hasher

        Returns:
            Created user
        """
        user = User(identifier=normalize_identifier(identifier), password_hash=password_hash)
        with store_errors(db):
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateIdentifierError()
            db.refresh(user)

        logger.info("Created user: %s", user.id)
        return user

    @staticmethod
    def update_hash(db: Session, user_id: str, new_hash: str, password_changed: bool = True) -> User:
        """
        Replace a user's password hash

        ``password_changed=False`` is used when the same password is only
        re-encoded with current hashing parameters.
        """
        with store_errors(db):
            user = db.get(User, user_id)
            if user is None:
                raise ResourceNotFoundError("User")
            user.password_hash = new_hash
            if password_changed:
                user.password_changed_at = datetime.now(timezone.utc)
            db.commit()
            db.refresh(user)
        return user

    @staticmethod
    def record_login(db: Session, user: User) -> None:
        with store_errors(db):
            user.last_login = datetime.now(timezone.utc)
            db.commit()

    @staticmethod
    def delete(db: Session, user_id: str) -> None:
        """Remove an account; callers revoke its sessions afterwards"""
        with store_errors(db):
            user = db.get(User, user_id)
            if user is None:
                raise ResourceNotFoundError("User")
            db.delete(user)
            db.commit()

        logger.info("Deleted user: %s", user_id)


# Singleton instance
credential_store = CredentialStore()
