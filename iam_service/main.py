from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from iam_service.auth.errors import register_error_handlers
from iam_service.auth.router import admin_router, router as auth_router
from iam_service.auth.services import build_auth_services
from iam_service.auth.transactions import AccountStore
from iam_service.auth.verification import Notifier
from iam_service.base_microservice import BaseMicroservice
from iam_service.config import Settings

# Create shared base microservice instance
base_service = BaseMicroservice(name="main")


def create_app(
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    store: Optional[AccountStore] = None,
) -> FastAPI:
    """
    Build the IAM application.

    Args:
        settings: Configuration, read from the environment when omitted
        notifier: Verification code delivery, logs messages when omitted
        store: Account store, built from settings.database_url when omitted

    Returns:
        FastAPI app with its components on app.state.auth_services
    """
    settings = settings or Settings.from_env()
    services = build_auth_services(settings, notifier=notifier, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for FastAPI.
        Creates the schema and the bootstrap owner on startup.
        """
        base_service.log_event("service.startup", {"service": "iam", "environment": settings.environment})
        try:
            await services.store.create_schema()
            if settings.bootstrap_owner_username and settings.bootstrap_owner_email and settings.bootstrap_owner_password:
                owner = await services.lifecycle.ensure_owner(
                    settings.bootstrap_owner_username,
                    settings.bootstrap_owner_email,
                    settings.bootstrap_owner_password,
                )
                if owner is not None:
                    base_service.log_event("account.owner.created", {"id": owner.id, "username": owner.username})
        except Exception as e:
            base_service.log_error(e, context="IAM service startup")
            raise

        yield

        base_service.log_event("service.shutdown", {"service": "iam"})
        await services.store.dispose()

    app = FastAPI(
        title="IAM Service",
        description="Accounts, tokens, roles and verification codes",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.auth_services = services

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # Include routers with prefixes
    app.include_router(auth_router, prefix="/auth", tags=["auth"])
    app.include_router(admin_router, prefix="/admin", tags=["admin"])

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint returning API information."""
        return {
            "name": "IAM Service",
            "version": "0.1.0",
            "services": ["auth", "admin"],
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Overall system health check."""
        return {
            "status": "ok",
            "services": {
                "auth": "online",
                "admin": "online",
            },
        }

    return app


app = create_app()

# For running directly with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("iam_service.main:app", host="0.0.0.0", port=8000, reload=True)
