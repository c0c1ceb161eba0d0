"""
Authentication middleware.

This module provides:
- AuthMiddlewarePipeline, the per-request gate run before protected routes
- AuthMiddleware, the FastAPI dependency adapter around it

The pipeline is an ordered list of stages. Each stage returns Continue
with the updated context or Reject with a failure; the first Reject ends
the run.

    extract bearer -> validate token -> token version -> status -> role -> identity
"""
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional, Union

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from iam_service.auth.errors import Failure, Result
from iam_service.auth.jwt import TokenClaims, TokenService
from iam_service.auth.models import AccountStatus, Role
from iam_service.auth.roles import RoleAuthority
from iam_service.auth.users import AccountState

BEARER_SCHEME = "bearer"

# Rejection is left to the pipeline so a missing token is TokenRequired
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthRequest:
    """The parts of an HTTP request the pipeline looks at."""
    authorization: Optional[str]
    required_role: Optional[Role] = None

    @classmethod
    def from_credentials(
        cls,
        credentials: Optional[HTTPAuthorizationCredentials],
        required_role: Optional[Role] = None,
    ) -> "AuthRequest":
        """Build from what FastAPI's HTTPBearer extracted, None when no bearer token was sent."""
        if credentials is None:
            return cls(None, required_role)
        return cls(f"{credentials.scheme} {credentials.credentials}", required_role)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, attached to the request once every stage passed."""
    account_id: int
    role: Role
    token_version: int


@dataclass(frozen=True)
class RequestContext:
    request: AuthRequest
    token: Optional[str] = None
    claims: Optional[TokenClaims] = None
    account: Optional[AccountState] = None
    identity: Optional[Identity] = None


@dataclass(frozen=True)
class Continue:
    context: RequestContext


@dataclass(frozen=True)
class Reject:
    failure: Failure


StageOutcome = Union[Continue, Reject]
Stage = Callable[[RequestContext], Awaitable[StageOutcome]]
AccountLookup = Callable[[int], Awaitable[Optional[AccountState]]]


class AuthMiddlewarePipeline:
    """
    Composes TokenService, an account lookup and RoleAuthority.

    Stateless apart from its collaborators; one instance serves every request.
    """

    def __init__(self, tokens: TokenService, lookup_account: AccountLookup):
        self.tokens = tokens
        self.lookup_account = lookup_account
        self.stages: List[Stage] = [
            self.extract_bearer,
            self.validate_token,
            self.check_token_version,
            self.check_status,
            self.check_role,
            self.attach_identity,
        ]

    async def run(self, request: AuthRequest) -> Result[Identity]:
        """
        Drive the stages in order.

        Returns:
            Result with the caller's Identity, or the failure of the first
            rejecting stage
        """
        context = RequestContext(request=request)
        for stage in self.stages:
            outcome = await stage(context)
            if isinstance(outcome, Reject):
                return Result.fail(outcome.failure)
            context = outcome.context
        return Result.success(context.identity)

    async def extract_bearer(self, context: RequestContext) -> StageOutcome:
        header = (context.request.authorization or "").strip()
        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() != BEARER_SCHEME or not token:
            return Reject(Failure.TOKEN_REQUIRED)
        return Continue(replace(context, token=token))

    async def validate_token(self, context: RequestContext) -> StageOutcome:
        validated = self.tokens.validate(context.token)
        if not validated.ok:
            return Reject(validated.failure)
        return Continue(replace(context, claims=validated.value))

    async def check_token_version(self, context: RequestContext) -> StageOutcome:
        account = await self.lookup_account(context.claims.account_id)
        if account is None:
            return Reject(Failure.TOKEN_INVALID)
        if account.token_version != context.claims.token_version:
            return Reject(Failure.TOKEN_REVOKED)
        return Continue(replace(context, account=account))

    async def check_status(self, context: RequestContext) -> StageOutcome:
        if context.account.status != AccountStatus.ACTIVE:
            return Reject(Failure.ACCOUNT_NOT_ACTIVE)
        return Continue(context)

    async def check_role(self, context: RequestContext) -> StageOutcome:
        required = context.request.required_role
        # The stored role decides, not the role claimed in the token
        if required is not None and not RoleAuthority.authorize(context.account.role, required):
            return Reject(Failure.INSUFFICIENT_ROLE)
        return Continue(context)

    async def attach_identity(self, context: RequestContext) -> StageOutcome:
        if context.account.role is None:
            return Reject(Failure.INSUFFICIENT_ROLE)
        identity = Identity(
            account_id=context.account.account_id,
            role=context.account.role,
            token_version=context.account.token_version,
        )
        return Continue(replace(context, identity=identity))


class AuthMiddleware:
    """
    Creates FastAPI dependencies for protecting routes.

    The pipeline is read from app.state.auth_services, so each app carries
    its own keys and storage.
    """

    @staticmethod
    def require(role: Optional[Role] = None):
        """
        Dependency that authenticates the caller and optionally checks a minimum role.

        Args:
            role: Minimum role required, or None for any active account

        Returns:
            Dependency function returning the caller's Identity
        """
        async def verify(
            request: Request,
            credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
        ) -> Identity:
            pipeline: AuthMiddlewarePipeline = request.app.state.auth_services.pipeline
            result = await pipeline.run(AuthRequest.from_credentials(credentials, role))
            identity = result.unwrap()
            request.state.identity = identity
            return identity

        return verify
