"""
To launch:
uvicorn mint_orchestrator.app:app --reload
"""
from mint_orchestrator.utils import load_local_env

load_local_env()

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mint_orchestrator import __version__
from mint_orchestrator.routes import api_router
from mint_orchestrator.services.context import OrchestratorContext, build_context
from mint_orchestrator.services.errors import StoreUnavailableError

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


STATUS_PATH_PREFIX = "/api/v1/status/"


class StatusPollFilter(logging.Filter):
    """
    Drop uvicorn access lines for status polls.

    Every in-flight task is polled by its client every 2-5 seconds, so these
    requests would otherwise bury the cron and admin lines in the access log.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        scope = getattr(record, "scope", None)
        if scope is not None:
            return not scope.get("path", "").startswith(STATUS_PATH_PREFIX)
        # uvicorn passes the request line as a positional arg
        return STATUS_PATH_PREFIX not in record.getMessage()


# Apply filter to uvicorn access logger
uvicorn_access_logger = logging.getLogger("uvicorn.access")
uvicorn_access_logger.addFilter(StatusPollFilter())


def create_app(context: Optional[OrchestratorContext] = None) -> FastAPI:
    """Build the application. Tests pass a ready context; production builds one from env."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: startup and shutdown"""
        # Startup
        app.state.context = context or build_context()
        yield
        # Shutdown: cleanup connections
        await app.state.context.close()

    application = FastAPI(
        title="Mint Orchestrator",
        description="Asynchronous generation of collectible artifacts requested on-chain",
        version=__version__,
        lifespan=lifespan,
    )

    @application.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error("Store unavailable while handling %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": f"Storage unavailable: {exc}"})

    application.include_router(api_router)
    return application


app = create_app()
