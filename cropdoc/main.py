# CropDoc Diagnostic Sessions v1.0.0
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware

from cropdoc import __version__
from cropdoc.config import GUARD_STALE_RESULTS, DEMO_MODE_ENABLED
from cropdoc.dependencies import SessionRegistry, build_registry
from cropdoc.errors import InvalidTransitionError, UnknownHistoryEntryError, UnknownSessionError
from cropdoc.routers import assistant, health, limiter, sessions

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(registry: Optional[SessionRegistry] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        # Startup
        if getattr(app_instance.state, "registry", None) is None:
            app_instance.state.registry = build_registry()
        active = app_instance.state.registry
        logger.info("=" * 60)
        logger.info(f"Starting CropDoc Diagnostic Sessions v{__version__}")
        logger.info(f"Model provider: {'✓' if active.provider_configured else '✗'}")
        logger.info(f"History backend: {active.backend.name}")
        logger.info(f"Stale result guard: {'on' if GUARD_STALE_RESULTS else 'off (last resolved wins)'}")
        logger.info(f"Demo mode: {'on' if DEMO_MODE_ENABLED else 'off'}")
        logger.info("=" * 60)

        yield

        # Shutdown
        logger.info(f"Shutting down gracefully, dropping {len(active.sessions)} live sessions")
        active.sessions.clear()

    app_instance = FastAPI(
        title="CropDoc Diagnostic Sessions",
        description="Crop image diagnosis with grounded treatment lookups and agronomist chat",
        version=__version__,
        lifespan=lifespan
    )
    app_instance.state.registry = registry

    # Initialize Rate Limiter
    app_instance.state.limiter = limiter
    app_instance.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app_instance.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app_instance.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"status": "error", "message": str(exc)})

    @app_instance.exception_handler(UnknownSessionError)
    @app_instance.exception_handler(UnknownHistoryEntryError)
    async def not_found_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"status": "error", "message": str(exc)})

    app_instance.include_router(health.router)
    app_instance.include_router(sessions.router)
    app_instance.include_router(assistant.router)
    return app_instance


app = create_app()


if __name__ == "__main__":
    uvicorn.run("cropdoc.main:app", host="0.0.0.0", port=8000)
