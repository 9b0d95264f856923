"""Security dependencies, session cookie handling and access logging"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import Request, Response

from app.core.config import settings, SESSION_COOKIE_NAME
from app.core.errors import NotAuthenticatedError
from app.schemas.session import AppSession

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def get_current_session(request: Request) -> AppSession:
    """Dependency: verified session, an empty one when the cookie is missing or invalid"""
    from app.services.session_service import get_session_service

    session = get_session_service().read(request)
    request.state.user_id = session.user_id or None
    return session


def require_session(request: Request) -> AppSession:
    """Dependency: require a logged-in session, return it"""
    session = get_current_session(request)
    if not session.is_authenticated:
        security_logger.info(
            f"Unauthenticated request - Path: {request.url.path}, IP: {get_client_ip(request)}"
        )
        raise NotAuthenticatedError()
    return session


def get_client_ip(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For from the reverse proxy"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def log_api_access(
    request: Request,
    user_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "user_id": user_id,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "origin": request.headers.get("Origin", "none"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")


def set_session_cookie(response: Response, token: str, max_age: Optional[int] = None) -> None:
    """Set the signed session cookie

    Without max_age the cookie lives for the browser session.
    """
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax",
        path="/",
        max_age=max_age
    )


def clear_session_cookie(response: Response) -> None:
    """Expire the session cookie"""
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax"
    )
