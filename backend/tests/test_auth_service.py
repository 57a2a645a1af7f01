import bcrypt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from authbackend.core.exceptions import (
    InvalidCredentialsError,
    ReplayDetectedError,
    SessionInvalidError,
    StoreUnavailableError,
)
from authbackend.models.audit import AuditEvent
from authbackend.models.user import User
from authbackend.services.auth_service import AuthService
from authbackend.services.rotation_engine import FamilyStatus


class _CountingHasher:
    """Wraps a real hasher and records which hashes were verified."""

    def __init__(self, inner):
        self.inner = inner
        self.verified = []

    def hash(self, plaintext):
        return self.inner.hash(plaintext)

    def verify(self, plaintext, hash_blob):
        self.verified.append(hash_blob)
        return self.inner.verify(plaintext, hash_blob)

    def needs_rehash(self, hash_blob):
        return self.inner.needs_rehash(hash_blob)

    @property
    def dummy_hash(self):
        return self.inner.dummy_hash


def test_login_returns_generation_zero_pair(db, auth_service):
    auth_service.register(db, "alice", "correct-password")
    pair = auth_service.login(db, "alice", "correct-password")

    assert auth_service.engine.decode(pair.refresh_credential).generation == 0
    claims = auth_service.authenticate(pair.access_token)
    assert claims.subject == db.query(User).filter(User.identifier == "alice").one().id


def test_login_identifier_is_case_insensitive(db, auth_service):
    auth_service.register(db, "Alice", "correct-password")
    assert auth_service.login(db, "ALICE", "correct-password").generation == 0


def test_wrong_password_and_unknown_identifier_fail_identically(db, auth_service):
    auth_service.register(db, "alice", "correct-password")

    with pytest.raises(InvalidCredentialsError) as wrong:
        auth_service.login(db, "alice", "wrong-password")
    with pytest.raises(InvalidCredentialsError) as unknown:
        auth_service.login(db, "mallory", "anything")

    assert wrong.value.message == unknown.value.message
    assert wrong.value.status_code == unknown.value.status_code == 401


def test_unknown_identifier_still_runs_hash_verification(db, rotation, hasher):
    counting = _CountingHasher(hasher)
    service = AuthService(rotation, hasher=counting)

    with pytest.raises(InvalidCredentialsError):
        service.login(db, "nobody", "guess")

    assert counting.verified == [hasher.dummy_hash]


def test_inactive_account_cannot_login(db, auth_service):
    user = auth_service.register(db, "alice", "correct-password")
    user.is_active = False
    db.commit()

    with pytest.raises(InvalidCredentialsError):
        auth_service.login(db, "alice", "correct-password")


def test_legacy_bcrypt_hash_is_upgraded_on_login(db, auth_service):
    legacy = bcrypt.hashpw(b"correct-password", bcrypt.gensalt(rounds=4)).decode("utf-8")
    db.add(User(identifier="legacy", password_hash=legacy))
    db.commit()

    auth_service.login(db, "legacy", "correct-password")

    user = db.query(User).filter(User.identifier == "legacy").one()
    assert user.password_hash.startswith("$argon2id$")
    assert user.password_changed_at is None
    assert user.last_login is not None


def test_alice_scenario(db, auth_service):
    auth_service.register(db, "alice", "correct")
    r0 = auth_service.login(db, "alice", "correct")

    r1 = auth_service.refresh(r0.refresh_credential)
    assert (r0.generation, r1.generation) == (0, 1)

    with pytest.raises(ReplayDetectedError):
        auth_service.refresh(r0.refresh_credential)
    with pytest.raises(SessionInvalidError):
        auth_service.refresh(r1.refresh_credential)


def test_repeated_logout_never_errors(db, auth_service):
    auth_service.register(db, "alice", "correct-password")
    pair = auth_service.login(db, "alice", "correct-password")

    auth_service.logout(pair.refresh_credential)
    auth_service.logout(pair.refresh_credential)
    auth_service.logout("garbage")

    assert auth_service.engine.state(pair.family_id).status is FamilyStatus.REVOKED


def test_change_password_revokes_every_session(db, auth_service):
    user = auth_service.register(db, "alice", "old-password")
    first = auth_service.login(db, "alice", "old-password")
    second = auth_service.login(db, "alice", "old-password")

    revoked = auth_service.change_password(db, user.id, "old-password", "new-password")

    assert revoked == 2
    for pair in (first, second):
        with pytest.raises(SessionInvalidError):
            auth_service.refresh(pair.refresh_credential)
    with pytest.raises(InvalidCredentialsError):
        auth_service.login(db, "alice", "old-password")
    assert auth_service.login(db, "alice", "new-password").generation == 0
    assert db.query(AuditEvent).filter(AuditEvent.action == "account.password_changed").count() == 1


def test_change_password_requires_current_password(db, auth_service):
    user = auth_service.register(db, "alice", "old-password")
    with pytest.raises(InvalidCredentialsError):
        auth_service.change_password(db, user.id, "not-it", "new-password")


def test_remove_account_cascades_to_sessions(db, auth_service):
    user = auth_service.register(db, "alice", "correct-password")
    user_id = user.id
    pair = auth_service.login(db, "alice", "correct-password")

    assert auth_service.remove_account(db, user_id) == 1

    assert db.get(User, user_id) is None
    with pytest.raises(SessionInvalidError):
        auth_service.refresh(pair.refresh_credential)
    with pytest.raises(InvalidCredentialsError):
        auth_service.login(db, "alice", "correct-password")
    event = db.query(AuditEvent).filter(AuditEvent.action == "account.removed").one()
    assert user_id in event.metadata_json


def test_store_outage_is_not_reported_as_invalid_credentials(auth_service, tmp_path):
    unreachable = create_engine(f"sqlite:///{tmp_path}/missing-dir/auth.db")
    db = sessionmaker(bind=unreachable)()
    try:
        with pytest.raises(StoreUnavailableError):
            auth_service.login(db, "alice", "correct-password")
    finally:
        db.close()
