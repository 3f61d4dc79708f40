"""
PuzzleGuard API Gateway
FastAPI application exposing the trust-and-safety subsystem.

Endpoints:
- Solution validation and detections (AntiCheat)
- Appeals (Appeals)
- Community reports and votes (Reports)
- Review queue, analytics and sweeps (Admin)
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import API_HOST, API_PORT, LOG_LEVEL, LOG_FORMAT
from kernel.src.errors import (
    CapacityExceeded, EligibilityDenied, InvalidStateError, NotFoundError,
    TrustSafetyError, ValidationFailure
)
from safety.src.trust_safety_service import get_trust_safety_service
from gateway.src.anti_cheat_routes import router as anti_cheat_router
from gateway.src.admin_routes import router as admin_router

# Configure logging
logging.basicConfig(level=getattr(logging, LOG_LEVEL), format=LOG_FORMAT)
logger = logging.getLogger(__name__)


# 领域错误 -> HTTP 状态码
ERROR_STATUS_CODES = [
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ValidationFailure, 422),
    (EligibilityDenied, 403),
    (CapacityExceeded, 429),
]


def status_code_for(exc: TrustSafetyError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            return status_code
    return 400


# =============================================================================
# Application Lifecycle
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("PuzzleGuard API Gateway starting...")
    get_trust_safety_service()
    yield
    logger.info("PuzzleGuard API Gateway shutting down...")


# =============================================================================
# FastAPI Application
# =============================================================================
app = FastAPI(
    title="PuzzleGuard API",
    description="Trust & Safety: cheat detection, case review, appeals and community moderation",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(anti_cheat_router)
app.include_router(admin_router)


# =============================================================================
# Health Check
# =============================================================================
@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "PuzzleGuard API Gateway",
        "systems": ["Evidence", "Detection", "Review", "Appeals", "Community", "Analytics"],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# =============================================================================
# Error Handlers
# =============================================================================
@app.exception_handler(TrustSafetyError)
async def trust_safety_error_handler(request: Request, exc: TrustSafetyError):
    status_code = status_code_for(exc)
    logger.info(f"{request.method} {request.url.path} -> {status_code} ({exc.reason})")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": str(exc)}
    )


# =============================================================================
# Main Entry Point
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=API_HOST, port=API_PORT)
