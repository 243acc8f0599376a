"""
AML Returns API Application Factory
"""

import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..errors import (
    ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ReturnsError, ValidationError
)
from ..logging_config import correlation_context, get_logger
from .admin import router as admin_router
from .organizations import router as organizations_router
from .submissions import router as submissions_router
from .users import router as users_router


logger = get_logger("aml_returns.api")

CORRELATION_HEADER = "X-Request-ID"

# Most specific first; BelowThresholdError and DuplicatePeriodError inherit their parent's status
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ForbiddenError, 403),
    (ConflictError, 409),
    (InvalidStateError, 400),
    (ValidationError, 400),
)


def status_code_for(error: ReturnsError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    app = FastAPI(
        title=config.api_title,
        description="Monthly AML/CFT statistical returns: submission review and compliance reporting",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(ReturnsError)
    async def returns_error_handler(request: Request, exc: ReturnsError):
        status_code = status_code_for(exc)
        if status_code == 500:
            logger.error(f"Unhandled returns error on {request.url.path}: {exc}")
            return JSONResponse(status_code=500, content={"detail": "Operation failed"})
        return JSONResponse(status_code=status_code, content={"detail": exc.message, "reason": exc.reason})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unexpected error on {request.url.path}")
        return JSONResponse(status_code=500, content={"detail": "Operation failed"})

    # Include routers
    app.include_router(submissions_router, prefix="/submissions", tags=["Submissions"])
    app.include_router(organizations_router, prefix="/organizations", tags=["Organizations"])
    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "aml_returns_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": config.api_title,
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "submissions": "/submissions",
                "organizations": "/organizations",
                "users": "/users",
                "admin": "/admin",
            }
        }

    return app


def run_server() -> None:
    """Run the API with uvicorn using the configured host and port"""
    import uvicorn
    from ..logging_config import setup_logging

    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(create_app(), host=config.api_host, port=config.api_port)
