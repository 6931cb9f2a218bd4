"""
Capability Tokens

Short-lived HS256 JWTs that bind one session to one user, one domain and a
fixed set of actions. Verification is the trust root for session creation.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import jwt

from agent_broker.core.errors import ConfigError, InvalidRequestError, InvalidTokenError
from agent_broker.core.models import AgentAction, TokenClaims, normalize_actions

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["exp", "iat", "jti", "sub"]


@dataclass(frozen=True)
class MintedToken:
    token: str
    claims: TokenClaims

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.claims.exp, tz=timezone.utc)


class TokenService:
    """Mints and verifies capability tokens with a symmetric secret."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 120,
        max_age_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret or ""
        self.ttl_seconds = ttl_seconds
        self.max_age_seconds = max_age_seconds or ttl_seconds
        self._clock = clock

    def _require_secret(self) -> str:
        if not self._secret:
            raise ConfigError("AGENT_JWS_SECRET", "signing secret is not configured")
        return self._secret

    def mint(
        self,
        user_id: str,
        domain: str,
        actions: Iterable[str],
        ttl: Optional[int] = None,
    ) -> MintedToken:
        """Create a token for a fresh session. Every call gets a new jti."""
        secret = self._require_secret()
        if not user_id:
            raise InvalidRequestError("user id is required", field="sub")
        normalized_domain = (domain or "").strip().lower()
        if not normalized_domain:
            raise InvalidRequestError("domain is required", field="domain")
        unique_actions = normalize_actions(list(actions or []))
        if not unique_actions:
            raise InvalidRequestError("no valid agent actions requested", field="actions")

        now = int(self._clock())
        claims = TokenClaims(
            jti=str(uuid.uuid4()),
            sub=user_id,
            domain=normalized_domain,
            iat=now,
            exp=now + int(ttl if ttl is not None else self.ttl_seconds),
            actions=tuple(unique_actions),
        )
        payload = {
            "jti": claims.jti,
            "sub": claims.sub,
            "domain": claims.domain,
            "actions": [action.value for action in claims.actions],
            "iat": claims.iat,
            "exp": claims.exp,
        }
        token = jwt.encode(payload, secret, algorithm=ALGORITHM, headers={"typ": "JWT"})
        return MintedToken(token=token, claims=claims)

    def verify(self, token: str) -> TokenClaims:
        """Validate signature, algorithm, age and claim shape. Never mutates state."""
        secret = self._require_secret()
        if not token or not isinstance(token, str):
            raise InvalidTokenError("token is missing")

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                # Time claims are checked below against the service clock.
                options={"require": REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError(str(exc) or exc.__class__.__name__)

        jti = payload.get("jti")
        if not jti or not isinstance(jti, str):
            raise InvalidTokenError("missing token id")
        sub = payload.get("sub")
        if not sub or not isinstance(sub, str):
            raise InvalidTokenError("missing user id")
        domain = payload.get("domain")
        if not domain or not isinstance(domain, str):
            raise InvalidTokenError("missing domain")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, int):
            raise InvalidTokenError("missing expiry")
        iat = payload.get("iat")
        if isinstance(iat, bool) or not isinstance(iat, (int, float)):
            raise InvalidTokenError("missing issued-at")

        now = self._clock()
        if exp <= now:
            raise InvalidTokenError("token has expired")
        if now - iat > self.max_age_seconds:
            raise InvalidTokenError("token is older than the maximum age")

        raw_actions = payload.get("actions", [])
        if not isinstance(raw_actions, list):
            raise InvalidTokenError("actions claim must be a list")
        actions = normalize_actions(raw_actions)
        if len(actions) != len(raw_actions):
            raise InvalidTokenError("actions claim contains unknown or repeated actions")

        return TokenClaims(
            jti=jti,
            sub=sub,
            domain=domain.lower(),
            exp=exp,
            iat=int(iat),
            actions=tuple(actions),
        )


def permits(claims: TokenClaims, action: AgentAction) -> bool:
    """Tokens without an actions claim permit every known action."""
    return not claims.actions or action in claims.actions
