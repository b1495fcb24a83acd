"""
Main FastAPI application - Approval Workflow Service.
"""

import logging
import os
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from approval_workflow.api.v1 import router as api_v1_router
from approval_workflow.api.v1.errors import error_response
from approval_workflow.config.settings import settings
from approval_workflow.core.startup import lifespan
from approval_workflow.models.schemas import WorkflowErrorCode

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, settings.log_level.upper(), logging.INFO)
    ),
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger()

# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="Approval Workflow Service",
    description="Configuration-driven multi-stage approvals with event-driven notifications",
    version="1.0.0",
    lifespan=lifespan,
)

# ============================================================================
# Middleware Configuration
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# Error Responses
# ============================================================================

HTTP_ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")

    logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
    return error_response(400, WorkflowErrorCode.VALIDATION_ERROR.value, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(
        exc.status_code,
        HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        str(exc.detail),
    )


# ============================================================================
# Mount API Routes
# ============================================================================

app.include_router(api_v1_router)

# ============================================================================
# Application Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")
    reload = os.getenv("RELOAD", "false").lower() == "true"

    logger.info(
        "starting_server",
        host=host,
        port=port,
        reload=reload
    )

    uvicorn.run(
        "main:app" if reload else app,
        host=host,
        port=port,
        reload=reload
    )
