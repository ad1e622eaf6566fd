"""
FastAPI application entry point.

Usage:
    uvicorn src.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI

from src.api.routes import avito_oauth
from src.credentials.redaction import setup_credential_logging
from src.platform.errors import ErrorHandlerMiddleware
from src.runtime import MarketplaceRuntime, get_runtime

logger = logging.getLogger(__name__)


def create_app(
    runtime: Optional[MarketplaceRuntime] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Build the application.

    When no runtime is given it is created from the environment at startup,
    so a missing ENCRYPTION_KEY fails the process before serving requests.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_credential_logging()
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = MarketplaceRuntime.from_env()
        await app.state.runtime.startup(start_scheduler=start_scheduler)
        try:
            yield
        finally:
            await app.state.runtime.shutdown()

    app = FastAPI(title="Marketplace Integration Backend", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(ErrorHandlerMiddleware)
    app.include_router(avito_oauth.router)

    @app.get("/health")
    async def health(runtime: MarketplaceRuntime = Depends(get_runtime)):
        return {"status": "ok", "client_cache": runtime.cache.stats()}

    return app


app = create_app()
