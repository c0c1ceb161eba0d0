"""
Test cases for token issuance and validation.
"""
import time
from datetime import timedelta

import jwt
import pytest

from iam_service.auth.errors import Failure
from iam_service.auth.jwt import TokenService
from iam_service.auth.models import Role
from iam_service.config import Settings

TEST_SECRET = "test-secret-key-0123456789-abcdefghijklmnopqrstuvwxyz"


@pytest.fixture
def tokens():
    return TokenService(Settings(jwt_secret_key=TEST_SECRET))


def _payload(**overrides):
    now = int(time.time())
    payload = {"sub": "1", "role": "user", "ver": 0, "iat": now, "exp": now + 3600}
    payload.update(overrides)
    return payload


def test_issue_then_validate_returns_claims(tokens):
    token = tokens.issue(42, Role.ADMIN, 3)
    assert token.token_type == "bearer"

    claims = tokens.validate(token.access_token).unwrap()
    assert claims.account_id == 42
    assert claims.role == Role.ADMIN
    assert claims.token_version == 3
    assert claims.expires_at == token.expires_at
    assert claims.token_id


def test_default_ttl_comes_from_settings():
    tokens = TokenService(Settings(jwt_secret_key=TEST_SECRET, access_token_ttl=timedelta(minutes=5)))
    token = tokens.issue(1, Role.USER, 0)
    claims = tokens.validate(token.access_token).unwrap()
    assert claims.expires_at - claims.issued_at == 300


def test_expired_token(tokens):
    token = tokens.issue(1, Role.USER, 0, ttl=timedelta(seconds=-5))
    assert tokens.validate(token.access_token).failure == Failure.TOKEN_EXPIRED


def test_signature_from_another_key_is_invalid(tokens):
    forged = jwt.encode(_payload(), "another-secret-key-0123456789-abcdefghijklmnop", algorithm="HS256")
    assert tokens.validate(forged).failure == Failure.TOKEN_INVALID


@pytest.mark.parametrize("token", ["", "not-a-token", "a.b.c"])
def test_garbage_is_malformed(tokens, token):
    assert tokens.validate(token).failure == Failure.TOKEN_MALFORMED


@pytest.mark.parametrize("payload", [
    {k: v for k, v in _payload().items() if k != "ver"},
    _payload(role="root"),
    _payload(sub="alice"),
    _payload(ver="1"),
    _payload(ver=True),
])
def test_bad_claims_are_malformed(tokens, payload):
    encoded = jwt.encode(payload, TEST_SECRET, algorithm="HS256")
    assert tokens.validate(encoded).failure == Failure.TOKEN_MALFORMED


def test_tokens_for_same_account_are_distinct(tokens):
    assert tokens.issue(1, Role.USER, 0).access_token != tokens.issue(1, Role.USER, 0).access_token


def test_signing_key_is_required():
    with pytest.raises(ValueError):
        TokenService(Settings(jwt_secret_key=""))


async def test_revoke_needs_a_bound_revoker(tokens):
    with pytest.raises(RuntimeError):
        await tokens.revoke(1)


async def test_revoke_bumps_token_version(services, make_account):
    account = await make_account("revokee")
    assert (await services.tokens.revoke(account.id)).unwrap() == 1
    assert (await services.tokens.revoke(account.id)).unwrap() == 2
    state = await services.lifecycle.get_account_state(account.id)
    assert state.token_version == 2
