from datetime import timedelta

from jose import jwt
import pytest

from warden.config import get_settings
from warden.errors import UnauthorizedError
from warden.services import tokens


def test_access_token_round_trip_carries_claims():
    token, expires_at = tokens.create_access_token("user-1", roles={"ADMIN"}, permissions={"VIEW_ROLE"})

    claims = tokens.decode_access_token(token)

    assert claims.subject == "user-1"
    assert claims.roles == {"ADMIN"}
    assert claims.permissions == {"VIEW_ROLE"}
    assert claims.token_id
    assert abs((claims.expires_at - expires_at).total_seconds()) < 1


def test_expired_access_token_is_rejected():
    token, _ = tokens.create_access_token("user-1", expires_delta=timedelta(minutes=-5))

    with pytest.raises(UnauthorizedError, match="expired"):
        tokens.decode_access_token(token)


def test_small_clock_skew_is_tolerated():
    skew = get_settings().clock_skew_seconds
    token, _ = tokens.create_access_token("user-1", expires_delta=timedelta(seconds=-(skew // 2)))

    assert tokens.decode_access_token(token).subject == "user-1"


def test_tampered_or_foreign_tokens_are_rejected():
    settings = get_settings()
    header, _payload, signature = tokens.create_access_token("user-1")[0].split(".")
    other_payload = tokens.create_access_token("user-2")[0].split(".")[1]
    tampered = ".".join([header, other_payload, signature])
    forged = jwt.encode({"sub": "user-1", "type": "access"}, "x" * 64, algorithm=settings.algorithm)
    wrong_type = jwt.encode({"sub": "user-1", "type": "refresh"}, settings.secret_key, algorithm=settings.algorithm)

    for candidate in (tampered, forged, wrong_type, "garbage"):
        with pytest.raises(UnauthorizedError):
            tokens.decode_access_token(candidate)


def test_refresh_tokens_are_random_and_hashed():
    first = tokens.generate_refresh_token()
    second = tokens.generate_refresh_token()

    assert first != second
    assert len(tokens.hash_refresh_token(first)) == 64
    assert tokens.hash_refresh_token(first) == tokens.hash_refresh_token(first)
    assert tokens.hash_refresh_token(first) != first
