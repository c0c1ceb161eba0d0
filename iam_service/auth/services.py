"""
Wiring of the IAM components.

build_auth_services() creates every component from one Settings object;
the resulting container is stored on app.state and reached by routes
through get_auth_services().
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from iam_service.auth.credentials import CredentialStore
from iam_service.auth.jwt import TokenService
from iam_service.auth.middleware import AuthMiddlewarePipeline
from iam_service.auth.roles import RoleAuthority
from iam_service.auth.transactions import AccountStore
from iam_service.auth.users import AccountLifecycleManager
from iam_service.auth.verification import Notifier, VerificationWorkflow
from iam_service.base_microservice import create_engine_and_sessions
from iam_service.config import Settings


@dataclass
class AuthServices:
    settings: Settings
    store: AccountStore
    credentials: CredentialStore
    tokens: TokenService
    roles: RoleAuthority
    verification: VerificationWorkflow
    lifecycle: AccountLifecycleManager
    pipeline: AuthMiddlewarePipeline


def build_auth_services(
    settings: Settings,
    notifier: Optional[Notifier] = None,
    store: Optional[AccountStore] = None,
) -> AuthServices:
    """
    Create and connect the IAM components.

    Args:
        settings: Process-wide configuration
        notifier: Delivery collaborator, defaults to the logging notifier
        store: Pre-built account store, defaults to one on settings.database_url

    Returns:
        AuthServices container
    """
    if store is None:
        engine, session_factory = create_engine_and_sessions(settings.database_url)
        store = AccountStore(session_factory, engine)

    credentials = CredentialStore(rounds=settings.bcrypt_rounds)
    tokens = TokenService(settings)
    verification = VerificationWorkflow(settings, notifier)
    lifecycle = AccountLifecycleManager(store, credentials, tokens, verification)
    tokens.bind_revoker(lifecycle.revoke_sessions)
    pipeline = AuthMiddlewarePipeline(tokens, lifecycle.get_account_state)

    return AuthServices(
        settings=settings,
        store=store,
        credentials=credentials,
        tokens=tokens,
        roles=RoleAuthority(),
        verification=verification,
        lifecycle=lifecycle,
        pipeline=pipeline,
    )


def get_auth_services(request: Request) -> AuthServices:
    """Dependency for getting the app's IAM components."""
    return request.app.state.auth_services
