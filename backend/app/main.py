import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime, timezone

from app.core.config import settings
from app.api.v1 import submissions
from app.api.v1.deps import close_submission_service

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.

    Startup:
    - Log the outbound API the service submits through

    Shutdown:
    - Close the outbound HTTP client
    """
    logger.info(f"Submitting through outbound API at {settings.SUBMISSION_API_URL}")

    yield

    await close_submission_service()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware - must be added FIRST to ensure headers on all responses including errors
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler to ensure JSON responses with proper CORS headers.

    HTTPException is handled by FastAPI's default handler and does not reach
    this handler, preserving intended status codes.
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
        },
    )

# API v1 router
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(submissions.router, prefix="/submissions", tags=["submissions"])

app.include_router(api_v1_router)


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    The service keeps no database; it reports its own liveness and the
    outbound API it is configured to use.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "outbound_api": {"status": "configured", "message": settings.SUBMISSION_API_URL},
        },
    }


@app.get("/")
async def root():
    return {
        "message": "E-Invoice Submission Orchestrator API",
        "version": "1.0.0",
        "docs": "/docs",
    }
