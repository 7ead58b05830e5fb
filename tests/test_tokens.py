"""Unit tests for the HS256 token codec."""

import base64
import json
from datetime import timedelta

import pytest

from cobalt_auth.service.errors import TokenExpiredError, TokenInvalidError
from cobalt_auth.service.tokens import (
    REFRESH_TOKEN_TYPE,
    TokenCodec,
    TokenConfig,
    hash_token,
)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _split(token: str):
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    return header, json.loads(base64.urlsafe_b64decode(padded)), signature


class TestIssue:
    def test_access_token_claims(self, codec, clock):
        issued = codec.issue_access("user-1", "alice")
        claims = codec.verify_access(issued.token)
        assert claims.sub == "user-1"
        assert claims.username == "alice"
        assert claims.jti == issued.token_id
        assert claims.iat == int(clock.now().timestamp())
        assert claims.exp - claims.iat == 15 * 60
        assert issued.expires_at == claims.expires_at

    def test_refresh_token_embeds_its_id(self, codec):
        issued = codec.issue_refresh("user-1")
        claims = codec.verify_refresh(issued.token)
        assert claims.jti == issued.token_id
        assert claims.sub == "user-1"
        assert claims.exp - claims.iat == 7 * 24 * 3600

    def test_token_ids_are_unique(self, codec):
        ids = {codec.issue_refresh("user-1").token_id for _ in range(50)}
        assert len(ids) == 50

    def test_repr_hides_token_string(self, codec):
        issued = codec.issue_access("user-1", "alice")
        assert issued.token not in repr(issued)

    def test_codec_requires_secret(self):
        with pytest.raises(ValueError):
            TokenCodec(TokenConfig(secret=""))


class TestVerify:
    def test_access_and_refresh_are_not_interchangeable(self, codec):
        access = codec.issue_access("user-1", "alice").token
        refresh = codec.issue_refresh("user-1").token
        with pytest.raises(TokenInvalidError):
            codec.verify_refresh(access)
        with pytest.raises(TokenInvalidError):
            codec.verify_access(refresh)

    def test_expired_access_token(self, codec, clock):
        token = codec.issue_access("user-1", "alice").token
        clock.advance(timedelta(minutes=15))
        with pytest.raises(TokenExpiredError):
            codec.verify_access(token)

    def test_token_valid_until_expiry(self, codec, clock):
        token = codec.issue_access("user-1", "alice").token
        clock.advance(timedelta(minutes=14, seconds=59))
        assert codec.verify_access(token).sub == "user-1"

    def test_leeway_tolerates_small_skew(self, settings, clock):
        lenient = TokenCodec(
            TokenConfig.from_settings(
                settings.model_copy(update={"clock_skew_leeway_seconds": 30})
            ),
            clock=clock,
        )
        token = lenient.issue_access("user-1", "alice").token
        clock.advance(timedelta(minutes=15, seconds=10))
        assert lenient.verify_access(token).sub == "user-1"

    def test_tampered_payload_is_invalid(self, codec):
        token = codec.issue_access("user-1", "alice").token
        header, payload, signature = _split(token)
        payload["sub"] = "user-2"
        forged = f"{header}.{_b64(payload)}.{signature}"
        with pytest.raises(TokenInvalidError):
            codec.verify_access(forged)

    def test_tampered_signature_is_invalid(self, codec):
        token = codec.issue_access("user-1", "alice").token
        flipped = token[:-2] + ("AA" if token[-2:] != "AA" else "BB")
        with pytest.raises(TokenInvalidError):
            codec.verify_access(flipped)

    def test_alg_none_is_rejected(self, codec):
        token = codec.issue_access("user-1", "alice").token
        _, payload, _ = _split(token)
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        with pytest.raises(TokenInvalidError):
            codec.verify_access(unsigned)

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d", "###.###.###"])
    def test_garbage_is_invalid(self, codec, garbage):
        with pytest.raises(TokenInvalidError):
            codec.verify_access(garbage)

    def test_other_secret_is_invalid(self, codec, clock):
        other = TokenCodec(TokenConfig(secret="another-secret-entirely-0123456789"), clock=clock)
        token = other.issue_access("user-1", "alice").token
        with pytest.raises(TokenInvalidError):
            codec.verify_access(token)

    def test_wrong_issuer_is_invalid(self, codec, settings, clock):
        foreign = TokenCodec(
            TokenConfig.from_settings(settings.model_copy(update={"jwt_issuer": "someone-else"})),
            clock=clock,
        )
        with pytest.raises(TokenInvalidError):
            codec.verify_access(foreign.issue_access("user-1", "alice").token)

    def test_wrong_audience_is_invalid(self, codec, settings, clock):
        foreign = TokenCodec(
            TokenConfig.from_settings(settings.model_copy(update={"jwt_audience": "elsewhere"})),
            clock=clock,
        )
        with pytest.raises(TokenInvalidError):
            codec.verify_refresh(foreign.issue_refresh("user-1").token)

    def test_expiry_checked_after_signature(self, codec, clock):
        token = codec.issue_access("user-1", "alice").token
        clock.advance(timedelta(days=1))
        header, payload, signature = _split(token)
        payload["username"] = "mallory"
        with pytest.raises(TokenInvalidError):
            codec.verify_access(f"{header}.{_b64(payload)}.{signature}")

    def test_codecs_do_not_share_keys(self, clock):
        first = TokenCodec(TokenConfig(secret="first-secret-0123456789abcdefghij"), clock=clock)
        second = TokenCodec(TokenConfig(secret="second-secret-0123456789abcdefghi"), clock=clock)
        token = first.issue_access("user-1", "alice").token
        assert first.verify_access(token).sub == "user-1"
        with pytest.raises(TokenInvalidError):
            second.verify_access(token)


class TestHelpers:
    def test_peek_token_id_ignores_expiry(self, codec, clock):
        issued = codec.issue_refresh("user-1")
        clock.advance(timedelta(days=30))
        assert codec.peek_token_id(issued.token, REFRESH_TOKEN_TYPE) == issued.token_id

    def test_peek_token_id_checks_signature_and_type(self, codec):
        refresh = codec.issue_refresh("user-1").token
        assert codec.peek_token_id(refresh) is None
        assert codec.peek_token_id("a.b.c", REFRESH_TOKEN_TYPE) is None

    def test_hash_token_is_sha256_hex(self):
        digest = hash_token("some-token")
        assert len(digest) == 64
        assert int(digest, 16) >= 0
        assert digest == hash_token("some-token")
        assert digest != hash_token("some-token2")

    def test_pair_exposes_raw_tokens(self, codec):
        from cobalt_auth.service.tokens import TokenPair

        pair = TokenPair(
            access=codec.issue_access("user-1", "alice"),
            refresh=codec.issue_refresh("user-1"),
            user_id="user-1",
        )
        assert pair.access_token == pair.access.token
        assert pair.refresh_token == pair.refresh.token
        assert pair.refresh_token not in repr(pair)
