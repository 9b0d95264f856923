"""Platform posting route, guarded by the platform rate limiter

The per-platform publishing calls live behind ``PlatformPublisher``; this
module only authenticates, throttles, retries and classifies.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import AppError, ProviderRequestError
from app.core.security import get_client_ip, require_session
from app.db.helpers import get_auth_provider, get_provider_credentials
from app.db.session import get_db
from app.schemas.session import AppSession
from app.services.error_classifier import PlatformErrorKind, RawPlatformError, classify
from app.services.rate_limiter import PlatformRateLimiter, get_platform_rate_limiter
from app.services.retry_policy import call_with_retry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/posting", tags=["posting"])

TWITTER_MAX_LENGTH = 280

ERROR_STATUS = {
    PlatformErrorKind.RATE_LIMIT: 429,
    PlatformErrorKind.TOKEN_EXPIRED: 401,
    PlatformErrorKind.PERMISSION_DENIED: 403,
    PlatformErrorKind.CONTENT_ERROR: 400,
    PlatformErrorKind.SERVER_ERROR: 502,
    PlatformErrorKind.UNKNOWN: 502,
}


class PostRequest(BaseModel):
    content: Optional[str] = None
    media: List[str] = Field(default_factory=list)


class PlatformPublisher(Protocol):
    """Publishes one post to a platform with the stored credentials

    Implementations raise ProviderRequestError for failed platform calls.
    """

    async def publish(self, platform: str, credentials: Dict[str, Any], post: PostRequest) -> Dict[str, Any]:
        ...


class UnconfiguredPublisher:
    """Default publisher used until a real one is wired in"""

    async def publish(self, platform: str, credentials: Dict[str, Any], post: PostRequest) -> Dict[str, Any]:
        raise AppError(f"Publishing to {platform} is not configured", code="PUBLISHER_NOT_CONFIGURED", status_code=501)


def get_platform_publisher() -> PlatformPublisher:
    """Dependency: publisher for platform posts"""
    return UnconfiguredPublisher()


def _failure(status_code: int, error: str, message: str, headers: Optional[Dict[str, str]] = None, **extra) -> JSONResponse:
    content = {"success": False, "error": error, "message": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@router.post("/{platform}")
async def post_to_platform(
    platform: str,
    post: PostRequest,
    request: Request,
    response: Response,
    session: AppSession = Depends(require_session),
    limiter: PlatformRateLimiter = Depends(get_platform_rate_limiter),
    publisher: PlatformPublisher = Depends(get_platform_publisher),
    db: Session = Depends(get_db)
):
    """Publish a post to a connected platform"""
    if not post.content and not post.media:
        return _failure(400, "INVALID_POST", "Posts require either text content or media")
    if platform == "twitter" and post.content and len(post.content) > TWITTER_MAX_LENGTH:
        return _failure(400, "CONTENT_TOO_LONG", f"Twitter content exceeds {TWITTER_MAX_LENGTH} character limit")

    limit = limiter.check(platform, session.user_id, get_client_ip(request))
    if not limit.allowed:
        return _failure(
            429,
            PlatformErrorKind.RATE_LIMIT.value,
            f"Rate limit exceeded for {platform}. Try again in {limit.retry_after} seconds.",
            headers=limit.headers(),
            isRetryable=True,
            retryAfter=limit.retry_after,
        )
    response.headers.update(limit.headers())

    row = get_auth_provider(session.user_id, platform, db=db)
    if row is None:
        return _failure(400, "PLATFORM_NOT_CONNECTED", f"{platform} account not connected")
    credentials = get_provider_credentials(row)

    try:
        result = await call_with_retry(platform, lambda: publisher.publish(platform, credentials, post))
    except ProviderRequestError as e:
        classified = classify(platform, RawPlatformError.from_exception(e))
        logger.error(f"Posting to {platform} failed for user {session.user_id}: {classified.code} ({e.message})")
        body = classified.to_dict()
        body["success"] = False
        return JSONResponse(status_code=ERROR_STATUS[classified.kind], content=body, headers=limit.headers())

    logger.info(f"Posted to {platform} for user {session.user_id}")
    return {"success": True, "platform": platform, "result": result}
