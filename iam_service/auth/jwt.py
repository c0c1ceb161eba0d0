"""
JWT token handling for authentication.

This module provides functionality for:
- Issuing signed bearer tokens
- Validating tokens into typed claims
- Revoking every token of an account

Revocation is carried by the account's token_version: a token is only
honoured while its `ver` claim equals the stored version, so revoking all
sessions is a single increment. A single session cannot be revoked on
its own.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidSignatureError, InvalidTokenError
from pydantic import BaseModel

from iam_service.auth.errors import Failure, Result
from iam_service.auth.models import Role
from iam_service.config import Settings

REQUIRED_CLAIMS = ["sub", "exp", "iat", "role", "ver"]


class Token(BaseModel):
    """Token response model."""
    access_token: str
    token_type: str = "bearer"
    expires_at: int  # Unix timestamp


@dataclass(frozen=True)
class TokenClaims:
    """Decoded claim set of a valid token."""
    account_id: int
    role: Role
    token_version: int
    issued_at: int
    expires_at: int
    token_id: Optional[str] = None


class TokenService:
    """
    Signs and validates bearer tokens with a process-wide key.

    Holds no revocation state; revoke() hands off to the account store.
    """

    def __init__(
        self,
        settings: Settings,
        revoke_sessions: Optional[Callable[[int], Awaitable[Result[int]]]] = None,
    ):
        if not settings.jwt_secret_key:
            raise ValueError("A signing key is required")
        self._secret_key = settings.jwt_secret_key
        self._algorithm = settings.jwt_algorithm
        self._default_ttl = settings.access_token_ttl
        self._revoke_sessions = revoke_sessions

    def bind_revoker(self, revoke_sessions: Callable[[int], Awaitable[Result[int]]]) -> None:
        """Attach the token-version increment used by revoke()."""
        self._revoke_sessions = revoke_sessions

    def issue(
        self,
        account_id: int,
        role: Role,
        token_version: int,
        ttl: Optional[timedelta] = None,
    ) -> Token:
        """
        Create a signed access token.

        Args:
            account_id: Subject account ID
            role: Role held at issuance
            token_version: Account token_version at issuance
            ttl: Lifetime, defaults to the configured access token TTL

        Returns:
            Token with the encoded JWT and its absolute expiry
        """
        now = datetime.now(timezone.utc)
        expires = now + (ttl if ttl is not None else self._default_ttl)
        payload: Dict[str, Any] = {
            "sub": str(account_id),
            "role": Role(role).label,
            "ver": int(token_version),
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
            "jti": secrets.token_hex(8),
        }
        encoded = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        return Token(access_token=encoded, token_type="bearer", expires_at=payload["exp"])

    def validate(self, token: str) -> Result[TokenClaims]:
        """
        Verify signature and expiry and decode the claims.

        Does not compare token_version against storage; that needs an
        account lookup and is done by the auth pipeline.

        Returns:
            Result with TokenClaims, or TOKEN_EXPIRED / TOKEN_INVALID
            (bad signature) / TOKEN_MALFORMED
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": REQUIRED_CLAIMS},
            )
        except ExpiredSignatureError:
            return Result.fail(Failure.TOKEN_EXPIRED)
        except InvalidSignatureError:
            return Result.fail(Failure.TOKEN_INVALID)
        except InvalidTokenError:
            return Result.fail(Failure.TOKEN_MALFORMED)

        role = Role.parse(payload.get("role"))
        try:
            account_id = int(payload["sub"])
            version = payload["ver"]
            if role is None or isinstance(version, bool) or not isinstance(version, int):
                raise ValueError("bad claim types")
        except (TypeError, ValueError):
            return Result.fail(Failure.TOKEN_MALFORMED)

        return Result.success(TokenClaims(
            account_id=account_id,
            role=role,
            token_version=version,
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            token_id=payload.get("jti"),
        ))

    async def revoke(self, account_id: int) -> Result[int]:
        """
        Invalidate every token issued to an account.

        Returns:
            Result with the account's new token_version
        """
        if self._revoke_sessions is None:
            raise RuntimeError("TokenService has no session revoker bound")
        return await self._revoke_sessions(account_id)
