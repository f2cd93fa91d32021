"""Test cases for session token signing and verification"""
from datetime import datetime, timedelta

import pytest
from jose import jwt

from keyhub.core.security import TokenCodec
from keyhub.models.domain import TokenType
from keyhub.utils.clock import FrozenClock, to_timestamp
from keyhub.utils.exceptions import InvalidToken, TokenExpired, TokenMalformed, TokenSignatureInvalid


@pytest.fixture
def codec(clock):
    return TokenCodec("unit-test-secret", "HS256", clock=clock)


def test_decode_returns_embedded_identity(codec, clock):
    """Test decode returns embedded identity"""
    token, issued = codec.encode("uid-1", TokenType.ADMIN, 3600, version=2)
    claims = codec.decode(token)

    assert claims.api_key_uid == "uid-1"
    assert claims.type == TokenType.ADMIN
    assert claims.version == 2
    assert claims.jti == issued.jti
    assert claims.expires_at == clock() + timedelta(seconds=3600)


def test_tokens_minted_in_same_second_differ(codec):
    """Test tokens minted in same second differ"""
    first, _ = codec.encode("uid-1", TokenType.REFRESH, 60)
    second, _ = codec.encode("uid-1", TokenType.REFRESH, 60)
    assert first != second


def test_token_valid_at_exact_expiry(codec, clock):
    """Test token valid at exact expiry"""
    token, _ = codec.encode("uid-1", TokenType.ADMIN, 3600)
    clock.advance(seconds=3600)
    assert codec.decode(token).api_key_uid == "uid-1"

    clock.advance(seconds=1)
    with pytest.raises(TokenExpired):
        codec.decode(token)


def test_signature_from_other_secret_is_rejected(codec, clock):
    """Test signature from other secret is rejected"""
    forged, _ = TokenCodec("another-secret", "HS256", clock=clock).encode("uid-1", TokenType.ADMIN, 3600)
    with pytest.raises(TokenSignatureInvalid):
        codec.decode(forged)


def test_tampered_payload_is_rejected(codec):
    """Test tampered payload is rejected"""
    token, _ = codec.encode("uid-1", TokenType.ADMIN, 3600)
    header, payload, signature = token.split(".")
    tampered = ".".join([header, payload[:-2] + ("AA" if payload[-2:] != "AA" else "BB"), signature])
    with pytest.raises(InvalidToken):
        codec.decode(tampered)


@pytest.mark.parametrize("token", ["", "not-a-token", "a.b", "a.b.c"])
def test_garbage_is_malformed(codec, token):
    """Test garbage is malformed"""
    with pytest.raises(TokenMalformed):
        codec.decode(token)


def test_missing_claims_are_malformed(codec, clock):
    """Test missing claims are malformed"""
    token = jwt.encode(
        {"sub": "uid-1", "exp": to_timestamp(clock()) + 60},
        "unit-test-secret",
        algorithm="HS256",
    )
    with pytest.raises(TokenMalformed):
        codec.decode(token)


def test_unknown_token_type_is_malformed(codec, clock):
    """Test unknown token type is malformed"""
    now = to_timestamp(clock())
    token = jwt.encode(
        {"sub": "uid-1", "type": "superuser", "iat": now, "exp": now + 60, "jti": "x"},
        "unit-test-secret",
        algorithm="HS256",
    )
    with pytest.raises(TokenMalformed):
        codec.decode(token)


def test_remaining_seconds(codec, clock):
    """Test remaining seconds"""
    _, claims = codec.encode("uid-1", TokenType.ADMIN, 3600)
    clock.advance(minutes=10)
    assert codec.remaining_seconds(claims) == 3000
    clock.advance(hours=2)
    assert codec.remaining_seconds(claims) == 0


def test_expiry_uses_injected_clock_not_wall_time():
    """Test expiry uses injected clock not wall time"""
    past = FrozenClock(datetime(2001, 1, 1))
    codec = TokenCodec("unit-test-secret", "HS256", clock=past)
    token, _ = codec.encode("uid-1", TokenType.ADMIN, 60)
    assert codec.decode(token).api_key_uid == "uid-1"
