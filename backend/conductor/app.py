"""
Conductor API Application

    uvicorn conductor.app:app

The module-level `app` builds its Conductor from the environment on startup.
"""

from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .config import ConductorConfig, configure_logging
from .routes import router, set_conductor
from .runtime import Conductor

logger = logging.getLogger(__name__)


def create_app(conductor: Optional[Conductor] = None) -> FastAPI:
    """
    Build the API application

    Args:
        conductor: Pre-built runtime (tests); built from the environment at
            startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = conductor
        if runtime is None:
            config = ConductorConfig.from_env()
            configure_logging(config.log_level)
            runtime = Conductor(config)
        runtime.freeze_tools()
        set_conductor(runtime)
        app.state.conductor = runtime
        logger.info("Conductor API started")
        try:
            yield
        finally:
            await runtime.aclose()
            set_conductor(None)

    app = FastAPI(title="Conductor", lifespan=lifespan)
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
