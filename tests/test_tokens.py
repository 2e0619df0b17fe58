"""Tests for bearer token minting and verification."""

import base64
import json

import pytest

from gatehouse.service.errors import InvalidTokenError
from gatehouse.service.tokens import TokenCodec


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def codec(clock):
    return TokenCodec("a-very-long-test-secret-value-1234567890", clock=clock)


class TestMintVerify:
    def test_claims_round_trip(self, codec, clock):
        token = codec.mint("user-1", "sess-1", 3600)
        claims = codec.verify(token)

        assert claims.user_id == "user-1"
        assert claims.session_id == "sess-1"
        assert claims.issued_at == int(clock())
        assert claims.expires_at == int(clock()) + 3600

    def test_token_is_three_segments(self, codec):
        assert codec.mint("u", "s", 60).count(".") == 2

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("")


class TestRejection:
    def test_expired(self, codec, clock):
        token = codec.mint("u", "s", 60)
        clock.advance(61)
        with pytest.raises(InvalidTokenError):
            codec.verify(token)

    def test_leeway_extends_validity(self, clock):
        codec = TokenCodec("secret-" * 6, leeway_seconds=30, clock=clock)
        token = codec.mint("u", "s", 60)
        clock.advance(75)
        assert codec.verify(token).user_id == "u"

    def test_tampered_payload(self, codec):
        header, _, signature = codec.mint("u", "s", 60).split(".")
        forged = _segment({"sub": "admin", "sid": "s", "exp": 9_999_999_999, "iss": "gatehouse"})
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{forged}.{signature}")

    def test_other_secret(self, codec, clock):
        other = TokenCodec("another-secret-value-abcdefghijklmnop", clock=clock)
        with pytest.raises(InvalidTokenError):
            codec.verify(other.mint("u", "s", 60))

    def test_other_issuer(self, clock):
        minted = TokenCodec("shared-secret-" * 3, issuer="elsewhere", clock=clock)
        verifier = TokenCodec("shared-secret-" * 3, clock=clock)
        with pytest.raises(InvalidTokenError):
            verifier.verify(minted.mint("u", "s", 60))

    def test_unsigned_algorithm(self, codec):
        header = _segment({"alg": "none", "typ": "JWT"})
        payload = _segment({"sub": "u", "sid": "s", "exp": 9_999_999_999, "iss": "gatehouse"})
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed(self, codec, token):
        with pytest.raises(InvalidTokenError):
            codec.verify(token)

    @pytest.mark.parametrize("signature", ["\u00e9\u00e9", "sig\u00e9"])
    def test_non_ascii_signature(self, codec, signature):
        header, payload, _ = codec.mint("u", "s", 60).split(".")
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{payload}.{signature}")

    def test_failures_share_one_message(self, codec, clock):
        expired = codec.mint("u", "s", 1)
        clock.advance(5)
        messages = set()
        for token in (expired, "garbage", None):
            with pytest.raises(InvalidTokenError) as excinfo:
                codec.verify(token)
            messages.add(excinfo.value.message)
        assert len(messages) == 1
