"""Unit tests for auth/tokens.py -- issue/decode, expiry, tamper detection.

Every call passes ``now`` explicitly (see conftest.at), so nothing here
depends on the wall clock.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta

import pytest
from conftest import SIGNING_KEY, T0, at
from jose import jwt

from auth.errors import ConfigurationError, ExpiredToken, MalformedToken
from auth.tokens import SigningAlgorithm, TokenCodec, TokenType, to_timestamp

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _claims(**overrides):
    iat = to_timestamp(T0)
    payload = {
        "sub": "p-1",
        "jti": "a" * 32,
        "iat": iat,
        "exp": iat + 3600,
        "iss": "watchlist",
        "aud": "watchlist-api",
        "typ": "access",
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}


def _flip_bit(token: str, index: int, bit: int) -> str:
    return token[:index] + chr(ord(token[index]) ^ (1 << bit)) + token[index + 1 :]


# ---------------------------------------------------------------------------
# Issue and decode
# ---------------------------------------------------------------------------


class TestIssueDecode:
    def test_round_trip(self, codec):
        issued = codec.issue("p-1", at(0))
        claims = codec.decode(issued.token, at(10))
        assert claims == issued.claims
        assert claims.principal == "p-1"
        assert claims.token_type is TokenType.ACCESS
        assert claims.issued_at == to_timestamp(T0)
        assert claims.expires_at == to_timestamp(T0) + 3600

    def test_compact_jws_shape(self, codec):
        token = codec.issue("p-1", at(0)).token
        assert token.count(".") == 2
        assert "=" not in token

    def test_token_ids_are_unique(self, codec):
        ids = {codec.issue("p-1", at(0)).claims.token_id for _ in range(200)}
        assert len(ids) == 200
        assert all(len(i) == 32 for i in ids)

    def test_naive_now_is_read_as_utc(self, codec):
        naive = datetime(2026, 1, 1, 12, 0, 0)
        assert codec.issue("p-1", naive).claims.issued_at == to_timestamp(T0)

    def test_timestamps_have_millisecond_resolution(self):
        assert to_timestamp(T0 + timedelta(microseconds=1600)) == to_timestamp(T0) + 0.002

    def test_empty_principal_rejected(self, codec):
        with pytest.raises(ValueError):
            codec.issue("", at(0))

    @pytest.mark.parametrize("algorithm", list(SigningAlgorithm))
    def test_every_algorithm_round_trips(self, algorithm):
        codec = TokenCodec(SIGNING_KEY, algorithm=algorithm)
        token = codec.issue("p-1", at(0)).token
        assert jwt.get_unverified_header(token)["alg"] == algorithm.value
        assert codec.decode(token, at(1)).principal == "p-1"


# ---------------------------------------------------------------------------
# Expiry and leeway
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_valid_just_before_expiry_plus_leeway(self, codec):
        token = codec.issue("p-1", at(0)).token
        assert codec.decode(token, at(3600)).principal == "p-1"
        assert codec.decode(token, at(3600.5)).principal == "p-1"

    def test_expired_after_lifetime(self, codec):
        token = codec.issue("p-1", at(0)).token
        with pytest.raises(ExpiredToken):
            codec.decode(token, at(3601))

    def test_zero_leeway_expires_exactly_at_exp(self):
        codec = TokenCodec(SIGNING_KEY, leeway=timedelta(0))
        token = codec.issue("p-1", at(0)).token
        codec.decode(token, at(3599.999))
        with pytest.raises(ExpiredToken):
            codec.decode(token, at(3600))

    def test_decode_allow_expired_skips_only_expiry(self, codec):
        token = codec.issue("p-1", at(0)).token
        assert codec.decode_allow_expired(token).principal == "p-1"
        with pytest.raises(MalformedToken):
            codec.decode_allow_expired(_flip_bit(token, token.index(".") + 1, 0))

    def test_is_expired(self, codec):
        claims = codec.issue("p-1", at(0)).claims
        assert not codec.is_expired(claims, at(3600))
        assert codec.is_expired(claims, at(3601))


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class TestRefreshTokens:
    def test_refresh_token_carries_paired_access(self, codec):
        access = codec.issue("p-1", at(0))
        refresh = codec.issue_refresh("p-1", at(0), access.claims)
        claims = codec.decode(refresh.token, at(7200), expected_type=TokenType.REFRESH)
        assert claims.paired_token_id == access.claims.token_id
        assert claims.paired_expires_at == access.claims.expires_at
        assert claims.expires_at == to_timestamp(T0) + 86400

    def test_refresh_token_is_not_an_access_token(self, codec):
        access = codec.issue("p-1", at(0))
        refresh = codec.issue_refresh("p-1", at(0), access.claims)
        with pytest.raises(MalformedToken):
            codec.decode(refresh.token, at(1))

    def test_access_token_is_not_a_refresh_token(self, codec):
        access = codec.issue("p-1", at(0))
        with pytest.raises(MalformedToken):
            codec.decode(access.token, at(1), expected_type=TokenType.REFRESH)

    def test_any_type_accepted_when_unspecified(self, codec):
        access = codec.issue("p-1", at(0))
        refresh = codec.issue_refresh("p-1", at(0), access.claims)
        assert codec.decode(refresh.token, at(1), expected_type=None).token_type is TokenType.REFRESH

    def test_pairing_with_other_principal_rejected(self, codec):
        access = codec.issue("p-1", at(0))
        with pytest.raises(ValueError):
            codec.issue_refresh("p-2", at(0), access.claims)


# ---------------------------------------------------------------------------
# Tampering and forgery
# ---------------------------------------------------------------------------


class TestTamper:
    def test_every_single_bit_flip_is_detected(self, codec):
        token = codec.issue("p-1", at(0)).token
        for index in range(len(token)):
            for bit in range(8):
                tampered = _flip_bit(token, index, bit)
                with pytest.raises(MalformedToken):
                    codec.decode(tampered, at(1))

    def test_wrong_key_rejected(self, codec):
        other = TokenCodec("another-signing-key-0123456789abcdef")
        with pytest.raises(MalformedToken):
            codec.decode(other.issue("p-1", at(0)).token, at(1))

    def test_algorithm_is_pinned(self, codec):
        forged = jwt.encode(_claims(), SIGNING_KEY, algorithm="HS512")
        with pytest.raises(MalformedToken):
            codec.decode(forged, at(1))

    def test_alg_none_rejected(self, codec):
        def seg(obj):
            return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()

        unsigned = f"{seg({'alg': 'none', 'typ': 'JWT'})}.{seg(_claims())}."
        with pytest.raises(MalformedToken):
            codec.decode(unsigned, at(1))

    def test_wrong_audience_rejected(self, codec):
        other = TokenCodec(SIGNING_KEY, audience="someone-else")
        with pytest.raises(MalformedToken):
            codec.decode(other.issue("p-1", at(0)).token, at(1))

    def test_wrong_issuer_rejected(self, codec):
        other = TokenCodec(SIGNING_KEY, issuer="someone-else")
        with pytest.raises(MalformedToken):
            codec.decode(other.issue("p-1", at(0)).token, at(1))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"jti": None},
            {"sub": None},
            {"exp": None},
            {"iat": "yesterday"},
            {"typ": "session"},
            {"typ": None},
            {"sub": ""},
        ],
    )
    def test_missing_or_ill_typed_claims_rejected(self, codec, overrides):
        token = jwt.encode(_claims(**overrides), SIGNING_KEY, algorithm="HS256")
        with pytest.raises(MalformedToken):
            codec.decode(token, at(1))

    def test_refresh_without_pairing_rejected(self, codec):
        token = jwt.encode(_claims(typ="refresh"), SIGNING_KEY, algorithm="HS256")
        with pytest.raises(MalformedToken):
            codec.decode(token, at(1), expected_type=None)

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d", "....", None, 42])
    def test_garbage_rejected(self, codec, garbage):
        with pytest.raises(MalformedToken):
            codec.decode(garbage, at(1))

    def test_error_message_is_generic(self, codec):
        with pytest.raises(MalformedToken) as exc_info:
            codec.decode("a.b.c", at(1))
        assert str(exc_info.value) == "Malformed token."


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    @pytest.mark.parametrize("key", ["", "short-key"])
    def test_weak_keys_rejected(self, key):
        with pytest.raises(ConfigurationError):
            TokenCodec(key)

    def test_non_positive_lifetime_rejected(self):
        with pytest.raises(ConfigurationError):
            TokenCodec(SIGNING_KEY, access_lifetime=timedelta(0))

    def test_negative_leeway_rejected(self):
        with pytest.raises(ConfigurationError):
            TokenCodec(SIGNING_KEY, leeway=timedelta(seconds=-1))

    def test_repr_hides_key(self, codec):
        assert SIGNING_KEY not in repr(codec)

    def test_max_lifetime(self, codec):
        assert codec.max_lifetime == timedelta(days=1)
