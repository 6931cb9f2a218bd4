import time

import jwt
import pytest

from agent_broker.core.errors import ConfigError, ErrorCode, InvalidRequestError, InvalidTokenError
from agent_broker.core.models import AgentAction
from agent_broker.core.tokens import TokenService, permits

from conftest import FakeClock, SECRET


def _tamper_signature(token: str) -> str:
    header, payload, signature = token.split(".")
    first = "B" if signature[0] == "A" else "A"
    return ".".join([header, payload, first + signature[1:]])


def test_mint_then_verify_returns_minted_claims():
    service = TokenService(SECRET, ttl_seconds=120)
    minted = service.mint("user-1", "Example.com", ["open", "fill", "click"])

    claims = service.verify(minted.token)

    assert claims == minted.claims
    assert claims.sub == "user-1"
    assert claims.domain == "example.com"
    assert claims.actions == (AgentAction.OPEN, AgentAction.FILL, AgentAction.CLICK)
    assert claims.exp - claims.iat == 120


def test_every_mint_gets_a_fresh_token_id():
    service = TokenService(SECRET)
    first = service.mint("user-1", "example.com", ["open"])
    second = service.mint("user-1", "example.com", ["open"])
    assert first.claims.jti != second.claims.jti


def test_expired_token_is_rejected():
    past = time.time() - 1000
    minted = TokenService(SECRET, ttl_seconds=120, clock=lambda: past).mint("user-1", "example.com", ["open"])

    with pytest.raises(InvalidTokenError) as exc_info:
        TokenService(SECRET, ttl_seconds=120).verify(minted.token)
    assert exc_info.value.code == ErrorCode.INVALID_TOKEN
    assert exc_info.value.status_code == 401


def test_token_older_than_max_age_is_rejected():
    issued = time.time() - 300
    minted = TokenService(SECRET, clock=lambda: issued).mint("user-1", "example.com", ["open"], ttl=3600)

    with pytest.raises(InvalidTokenError) as exc_info:
        TokenService(SECRET, ttl_seconds=120).verify(minted.token)
    assert "maximum age" in exc_info.value.detail


def test_expiry_follows_the_service_clock():
    clock = FakeClock(1_000_000.0)
    service = TokenService(SECRET, ttl_seconds=120, clock=clock)
    minted = service.mint("user-1", "example.com", ["open"])

    assert service.verify(minted.token).jti == minted.claims.jti
    clock.advance(120)
    with pytest.raises(InvalidTokenError) as exc_info:
        service.verify(minted.token)
    assert exc_info.value.detail == "token has expired"


def test_tampered_signature_is_rejected():
    service = TokenService(SECRET)
    minted = service.mint("user-1", "example.com", ["open"])

    with pytest.raises(InvalidTokenError):
        service.verify(_tamper_signature(minted.token))


def test_token_signed_with_other_secret_is_rejected():
    minted = TokenService("another-secret-0123456789abcdef-xyz").mint("user-1", "example.com", ["open"])
    with pytest.raises(InvalidTokenError):
        TokenService(SECRET).verify(minted.token)


@pytest.mark.parametrize("algorithm", ["HS512", "none"])
def test_only_hs256_is_accepted(algorithm):
    now = int(time.time())
    payload = {"jti": "t-1", "sub": "user-1", "domain": "example.com", "actions": ["open"], "iat": now, "exp": now + 60}
    key = SECRET if algorithm != "none" else None
    token = jwt.encode(payload, key, algorithm=algorithm)

    with pytest.raises(InvalidTokenError):
        TokenService(SECRET).verify(token)


@pytest.mark.parametrize("missing", ["jti", "sub", "iat", "exp"])
def test_missing_required_claim_is_rejected(missing):
    now = int(time.time())
    payload = {"jti": "t-1", "sub": "user-1", "domain": "example.com", "actions": ["open"], "iat": now, "exp": now + 60}
    payload.pop(missing)
    token = jwt.encode(payload, SECRET, algorithm="HS256")

    with pytest.raises(InvalidTokenError):
        TokenService(SECRET).verify(token)


def test_unknown_actions_claim_is_rejected():
    now = int(time.time())
    payload = {"jti": "t-1", "sub": "user-1", "domain": "example.com", "actions": ["open", "delete"], "iat": now, "exp": now + 60}
    token = jwt.encode(payload, SECRET, algorithm="HS256")

    with pytest.raises(InvalidTokenError) as exc_info:
        TokenService(SECRET).verify(token)
    assert "unknown or repeated" in exc_info.value.detail


def test_missing_secret_is_a_config_error():
    service = TokenService("")
    with pytest.raises(ConfigError) as exc_info:
        service.mint("user-1", "example.com", ["open"])
    assert exc_info.value.code == ErrorCode.CONFIG_ERROR
    with pytest.raises(ConfigError):
        service.verify("a.b.c")


def test_mint_requires_known_actions():
    with pytest.raises(InvalidRequestError):
        TokenService(SECRET).mint("user-1", "example.com", ["teleport"])


def test_empty_actions_claim_permits_everything():
    now = int(time.time())
    token = jwt.encode(
        {"jti": "t-1", "sub": "user-1", "domain": "example.com", "actions": [], "iat": now, "exp": now + 60},
        SECRET,
        algorithm="HS256",
    )
    claims = TokenService(SECRET).verify(token)
    assert all(permits(claims, action) for action in AgentAction)
