from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.attempts import router as attempts_router
from app.api.dependencies import seed_dev_data
from app.api.health import router as health_router
from app.api.metrics_endpoint import router as metrics_router
from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.db import engine as db
from app.db.engine import lifespan_db
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_context import RequestContextMiddleware

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    async with lifespan_db():
        if SETTINGS.is_dev and db.async_session_factory is None:
            seed_dev_data()
        yield


app = FastAPI(
    title="exam-service",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

# Last added runs first: RequestContext → Metrics → route handler,
# so metrics and handler logs already see the request id.
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(attempts_router)

logger.info(
    "exam-service started  env=%s log_level=%s port=%d docs=%s strict_questions=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
    SETTINGS.strict_question_ids,
)
