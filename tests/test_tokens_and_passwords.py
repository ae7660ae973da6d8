"""Unit tests for password hashing, access tokens and opaque token generation."""

import base64
import json

import pytest

from gatehouse.service.passwords import PasswordService
from gatehouse.service.tokens import InvalidTokenError, TokenCodec, generate_random_token


@pytest.fixture
def codec():
    return TokenCodec("unit-test-secret", expires_in=3600)


class TestPasswordService:
    def test_hash_is_argon2id_and_verifies(self):
        passwords = PasswordService()
        hashed = passwords.hash("correct horse battery")

        assert hashed.startswith("$argon2id$")
        assert passwords.verify("correct horse battery", hashed)

    def test_wrong_password_is_rejected(self):
        passwords = PasswordService()
        hashed = passwords.hash("correct horse battery")

        assert not passwords.verify("wrong horse battery", hashed)

    def test_missing_or_garbage_hash_never_raises(self):
        passwords = PasswordService()

        assert not passwords.verify("anything", None)
        assert not passwords.verify("anything", "")
        assert not passwords.verify("anything", "not-a-hash")


class TestTokenCodec:
    def test_round_trip_returns_only_the_id(self, codec):
        token = codec.issue_access_token("user-1", now=1_000)

        assert codec.verify_access_token(token, now=1_001) == {"id": "user-1"}

    def test_claims_carry_issue_and_expiry(self, codec):
        token = codec.issue_access_token("user-1", now=1_000)
        payload_b64 = token.split(".")[1]
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))

        assert payload == {"id": "user-1", "iat": 1_000, "exp": 4_600}

    def test_expired_token_is_rejected(self, codec):
        token = codec.issue_access_token("user-1", now=1_000)

        with pytest.raises(InvalidTokenError):
            codec.verify_access_token(token, now=4_600)

    def test_token_signed_with_other_secret_is_rejected(self, codec):
        forged = TokenCodec("another-secret").issue_access_token("user-1", now=1_000)

        with pytest.raises(InvalidTokenError):
            codec.verify_access_token(forged, now=1_001)

    def test_tampered_payload_is_rejected(self, codec):
        header, _, signature = codec.issue_access_token("user-1", now=1_000).split(".")
        other_payload = codec.issue_access_token("admin", now=1_000).split(".")[1]

        with pytest.raises(InvalidTokenError):
            codec.verify_access_token(f"{header}.{other_payload}.{signature}", now=1_001)

    def test_none_algorithm_is_rejected(self, codec):
        token = codec.issue_access_token("user-1", now=1_000)
        _, payload, signature = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

        with pytest.raises(InvalidTokenError):
            codec.verify_access_token(f"{header}.{payload}.{signature}", now=1_001)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_rejected(self, codec, garbage):
        with pytest.raises(InvalidTokenError):
            codec.verify_access_token(garbage)

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            TokenCodec("")


class TestRandomTokens:
    def test_tokens_are_unique(self):
        tokens = {generate_random_token() for _ in range(500)}

        assert len(tokens) == 500

    def test_length_controls_random_parts(self):
        short = generate_random_token(4)
        long = generate_random_token(64)

        assert len(long) - len(short) >= 120
        assert short.isalnum() and long.isalnum()
