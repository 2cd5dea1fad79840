"""
gradetags FastAPI Application.

Administrative and grading-sync API for the tag taxonomy pipeline.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from gradetags.api.routes import submissions, tags
from gradetags.db.connection import dispose_engine, init_engine
from gradetags.exceptions import InvalidRequestError, NotFoundError
from gradetags.logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.

    Owns the database engine: created on startup, disposed on shutdown.
    """
    # Initialize logging first
    setup_logging(context="api")

    init_engine()
    logger.info("Application startup complete")

    yield

    logger.info("Application shutdown initiated...")
    dispose_engine()
    logger.info("Application shutdown complete")


app = FastAPI(
    lifespan=lifespan,
    title="gradetags API",
    description="Tag, domain and ability taxonomy mined from grading feedback",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request: Request, exc: InvalidRequestError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    from gradetags.db.connection import check_connection

    db_status = "healthy" if check_connection() else "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
    }


app.include_router(tags.router, prefix="/tags", tags=["tags"])
app.include_router(submissions.router, prefix="/submissions", tags=["submissions"])
