import os
import logging
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import sessionmaker, declarative_base

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("iam_service")

Base = declarative_base()


def create_engine_and_sessions(database_url: str, echo: bool = False):
    """
    Build the async engine and session factory for a database URL.

    Returns:
        Tuple of (engine, session factory)
    """
    engine: AsyncEngine = create_async_engine(database_url, echo=echo, future=True)
    session_factory = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, session_factory


class MCPResponse(JSONResponse):
    """
    Standard MCP protocol response for all API endpoints.
    """
    def __init__(
        self,
        data: Any = None,
        message: str = "success",
        status: str = "ok",
        error_code: Optional[str] = None,
        **kwargs
    ):
        content = {
            "status": status,
            "message": message,
            "data": jsonable_encoder(data),
        }
        if error_code is not None:
            content["error_code"] = error_code
        super().__init__(content=content, **kwargs)


class BaseMicroservice:
    """
    Shared helpers for the service routers. Provides:
    - Error/event logging
    - MCP protocol response
    """
    def __init__(self, name: str = "iam"):
        self.name = name
        self.logger = logger.getChild(name)

    def mcp_response(
        self,
        data: Any = None,
        message: str = "success",
        status: str = "ok",
        status_code: int = 200,
    ) -> MCPResponse:
        """
        Return a standard MCP protocol response.
        """
        return MCPResponse(data=data, message=message, status=status, status_code=status_code)

    def log_event(self, event: str, details: Dict[str, Any] = None):
        self.logger.info(f"EVENT: {event} | Details: {details}")

    def log_error(self, error: Exception, context: str = ""):
        self.logger.error(f"ERROR: {error.__class__.__name__}: {error} | Context: {context}")
