"""FastAPI application factory.

Main entry point for the agency admin Web API.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agencybrain.config import load_app_config
from agencybrain.core.challenge import seed_challenge_product
from agencybrain.db import init_db
from agencybrain.web.routes import (
    calls_router,
    challenge_router,
    health_router,
    staff_auth_router,
    staff_router,
    training_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan context manager for startup/shutdown events."""
    config = load_app_config()
    db_path = Path(config.database.path)
    init_db(db_path)
    product = seed_challenge_product()
    logger.info(
        "api_startup",
        db_path=str(db_path.absolute()),
        challenge_product_id=product.id,
        call_analysis_model=config.call_analysis.model,
    )
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="AgencyBrain API",
        description="Admin backend for staff access, training, the Challenge and call scoring",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(staff_router)
    app.include_router(staff_auth_router)
    app.include_router(training_router)
    app.include_router(challenge_router)
    app.include_router(calls_router)

    return app


# Default app instance for uvicorn
app = create_app()
