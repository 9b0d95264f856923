"""Middleware and exception handlers for the FastAPI application"""
import logging
from urllib.parse import urlencode

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings, LOGIN_URL
from app.core.errors import AppError, NotAuthenticatedError
from app.core.security import log_api_access

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.APP_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return list(dict.fromkeys(allowed_origins))


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )


async def access_log_middleware(request: Request, call_next):
    """Log every API request with its outcome"""
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        security_logger.error(f"Request failed: {error}", exc_info=True)
        raise
    finally:
        if request.url.path not in ("/health", "/metrics"):
            log_api_access(request, getattr(request.state, "user_id", None), status_code, error)


async def not_authenticated_handler(request: Request, exc: NotAuthenticatedError):
    """401 with a hint where to log in, keeping the current path as return target"""
    login_url = f"{LOGIN_URL}?{urlencode({'returnTo': request.url.path})}"
    return JSONResponse(status_code=401, content={"error": exc.message, "loginUrl": login_url})


async def app_error_handler(request: Request, exc: AppError):
    """Application errors carry their own status code"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    else:
        logger.info(f"{exc.code}: {exc.message} - Path: {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


def register_exception_handlers(app):
    app.add_exception_handler(NotAuthenticatedError, not_authenticated_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
