from datetime import timedelta

import pytest

from authbackend.core.exceptions import MalformedTokenError, TokenExpiredError, TokenInvalidError
from authbackend.core.tokens import REFRESH, SigningKey, SigningKeyset, TokenCodec


def test_access_token_round_trip(codec, clock):
    token = codec.issue("user-7", timedelta(minutes=15))
    claims = codec.verify(token)
    assert claims.subject == "user-7"
    assert claims.token_type == "access"
    assert claims.issued_at == clock.now
    assert claims.expires_at == clock.now + timedelta(minutes=15)


def test_expired_after_ttl(codec, clock):
    token = codec.issue("user-7", timedelta(minutes=15))
    clock.advance(15 * 60 + 6)
    with pytest.raises(TokenExpiredError):
        codec.verify(token)


def test_clock_skew_allowance_applies_to_expiry(codec, clock):
    token = codec.issue("user-7", timedelta(seconds=30))
    clock.advance(34)
    assert codec.verify(token).subject == "user-7"


def test_verify_without_expiry_check(codec, clock):
    token = codec.issue("user-7", timedelta(seconds=30))
    clock.advance(3600)
    assert codec.verify(token, verify_expiry=False).subject == "user-7"


def test_refresh_token_rejected_as_access(codec):
    refresh = codec.issue("user-1", timedelta(days=1), token_type=REFRESH, claims={"fam": "family-1"})
    with pytest.raises(TokenInvalidError):
        codec.verify(refresh)


def test_refresh_token_contains_family(codec):
    token = codec.issue("user-9", timedelta(days=1), token_type=REFRESH, claims={"fam": "fam-xyz", "gen": 3})
    claims = codec.verify(token, expected_type=REFRESH)
    assert claims.extra == {"fam": "fam-xyz", "gen": 3}


def test_tampered_signature_is_invalid_not_malformed(codec):
    token = codec.issue("user-7", timedelta(minutes=5))
    header, payload, signature = token.split(".")
    flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
    with pytest.raises(TokenInvalidError):
        codec.verify(".".join([header, payload, flipped]))


def test_token_signed_with_other_secret_is_invalid(codec, clock):
    forger = TokenCodec(SigningKeyset(active=SigningKey("k1", "someone-elses-secret")), clock=clock)
    with pytest.raises(TokenInvalidError):
        codec.verify(forger.issue("user-7", timedelta(minutes=5)))


@pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b.c", "eyJhbGciOiJIUzI1NiJ9"])
def test_malformed_tokens(codec, garbage):
    with pytest.raises(MalformedTokenError):
        codec.verify(garbage)


def test_previous_key_verifies_during_overlap(codec):
    old_token = codec.issue("user-7", timedelta(minutes=5))
    codec.rotate_key("k2", "rotated-secret-key-with-enough-entropy-02")

    assert codec.keyset.active.kid == "k2"
    assert codec.verify(old_token).subject == "user-7"
    new_token = codec.issue("user-8", timedelta(minutes=5))
    assert codec.verify(new_token).subject == "user-8"


def test_retired_key_no_longer_verifies(codec):
    old_token = codec.issue("user-7", timedelta(minutes=5))
    codec.rotate_key("k2", "rotated-secret-key-with-enough-entropy-02")
    codec.retire_keys(["k1"])
    with pytest.raises(TokenInvalidError):
        codec.verify(old_token)


def test_rotation_keeps_bounded_overlap(keyset):
    rotated = keyset.rotated(SigningKey("k2", "s2")).rotated(SigningKey("k3", "s3"))
    assert rotated.active.kid == "k3"
    assert [k.kid for k in rotated.previous] == ["k2"]
    assert rotated.lookup("k1") is None
