"""Platform error classifier

Maps a raw provider failure (HTTP status, error body, headers) to a stable
error code, a coarse kind and retry guidance. The per-platform tables only
read their input; classify() also records a metric and a log line.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from app.core.errors import ProviderRequestError
from app.core.metrics import platform_errors_counter

logger = logging.getLogger(__name__)


class PlatformErrorKind(str, Enum):
    RATE_LIMIT = "PLATFORM_RATE_LIMIT"
    TOKEN_EXPIRED = "PLATFORM_TOKEN_EXPIRED"
    PERMISSION_DENIED = "PLATFORM_PERMISSION_DENIED"
    SERVER_ERROR = "PLATFORM_SERVER_ERROR"
    CONTENT_ERROR = "PLATFORM_CONTENT_ERROR"
    UNKNOWN = "UNKNOWN_PLATFORM_ERROR"


@dataclass
class RawPlatformError:
    """What we know about a failed platform call"""
    status: Optional[int] = None
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    message: str = ""

    @classmethod
    def from_response(cls, response: httpx.Response) -> "RawPlatformError":
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return cls(
            status=response.status_code,
            body=body,
            headers=dict(response.headers),
            message=f"HTTP {response.status_code}",
        )

    @classmethod
    def from_exception(cls, exc: Exception) -> "RawPlatformError":
        if isinstance(exc, ProviderRequestError):
            return cls(status=exc.status, body=exc.body, headers=dict(exc.headers), message=exc.message)
        if isinstance(exc, httpx.HTTPStatusError):
            raw = cls.from_response(exc.response)
            raw.message = str(exc)
            return raw
        return cls(message=str(exc))

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None

    def body_dict(self) -> Dict[str, Any]:
        return self.body if isinstance(self.body, dict) else {}


@dataclass(frozen=True)
class ClassifiedError:
    code: str
    message: str
    is_retryable: bool
    kind: PlatformErrorKind
    platform: str
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "kind": self.kind.value,
            "isRetryable": self.is_retryable,
            "retryAfter": self.retry_after,
            "platform": self.platform,
        }


def _is_server_error(raw: RawPlatformError) -> bool:
    return raw.status is not None and raw.status >= 500


def _fallback(platform: str, code: str, raw: RawPlatformError, message: Optional[str] = None) -> ClassifiedError:
    """Catch-all: retryable only for 5xx"""
    server_error = _is_server_error(raw)
    return ClassifiedError(
        code=code,
        message=message or raw.message or f"Unknown {platform} error",
        is_retryable=server_error,
        kind=PlatformErrorKind.SERVER_ERROR if server_error else PlatformErrorKind.UNKNOWN,
        platform=platform,
    )


# ============================================================================
# FACEBOOK / INSTAGRAM (Graph API error codes)
# ============================================================================

FB_RATE_LIMIT_CODES = {4, 17, 32, 613}
FB_TOKEN_EXPIRED_CODES = {102, 190}


def _classify_facebook(platform: str, raw: RawPlatformError) -> ClassifiedError:
    body = raw.body_dict()
    error = body.get("error") if isinstance(body.get("error"), dict) else body
    code = error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None

    if code in (1, 2):
        return ClassifiedError("FB_API_UNKNOWN_ERROR", "Facebook API temporary error", True,
                               PlatformErrorKind.SERVER_ERROR, platform)
    if code in FB_RATE_LIMIT_CODES:
        return ClassifiedError("FB_RATE_LIMIT", "Facebook API rate limit exceeded", True,
                               PlatformErrorKind.RATE_LIMIT, platform, retry_after=3600)
    if code == 10 or (code is not None and 200 <= code <= 299):
        return ClassifiedError("FB_PERMISSION_DENIED", "Insufficient permissions for Facebook", False,
                               PlatformErrorKind.PERMISSION_DENIED, platform)
    if code in FB_TOKEN_EXPIRED_CODES:
        return ClassifiedError("FB_TOKEN_EXPIRED", "Facebook access token expired", False,
                               PlatformErrorKind.TOKEN_EXPIRED, platform)
    if code == 368:
        return ClassifiedError("FB_TEMPORARILY_BLOCKED", "Facebook temporarily blocked this action", True,
                               PlatformErrorKind.RATE_LIMIT, platform, retry_after=7200)
    return _fallback(platform, "FB_UNKNOWN_ERROR", raw, error.get("message"))


# ============================================================================
# TWITTER
# ============================================================================

def _twitter_error_code(body: Dict[str, Any]) -> Optional[int]:
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        try:
            return int(errors[0].get("code"))
        except (TypeError, ValueError):
            return None
    return None


def _classify_twitter(platform: str, raw: RawPlatformError) -> ClassifiedError:
    code = _twitter_error_code(raw.body_dict())

    if raw.status == 429 or code in (88, 185):
        return ClassifiedError("TWITTER_RATE_LIMIT", "Twitter API rate limit exceeded", True,
                               PlatformErrorKind.RATE_LIMIT, platform, retry_after=900)
    if raw.status == 401 or code == 89:
        return ClassifiedError("TWITTER_UNAUTHORIZED", "Twitter authorization failed", False,
                               PlatformErrorKind.TOKEN_EXPIRED, platform)
    if raw.status == 403:
        if code in (186, 187):
            return ClassifiedError("TWITTER_DUPLICATE", "Duplicate tweet content", False,
                                   PlatformErrorKind.CONTENT_ERROR, platform)
        return ClassifiedError("TWITTER_FORBIDDEN", "Twitter posting forbidden", False,
                               PlatformErrorKind.PERMISSION_DENIED, platform)
    if raw.status in (500, 502, 503, 504):
        return ClassifiedError("TWITTER_SERVER_ERROR", "Twitter server error", True,
                               PlatformErrorKind.SERVER_ERROR, platform)
    return _fallback(platform, "TWITTER_UNKNOWN_ERROR", raw)


# ============================================================================
# LINKEDIN
# ============================================================================

def _classify_linkedin(platform: str, raw: RawPlatformError) -> ClassifiedError:
    if raw.status == 429:
        return ClassifiedError("LINKEDIN_RATE_LIMIT", "LinkedIn API rate limit exceeded", True,
                               PlatformErrorKind.RATE_LIMIT, platform, retry_after=3600)
    if raw.status == 401:
        return ClassifiedError("LINKEDIN_UNAUTHORIZED", "LinkedIn authorization failed", False,
                               PlatformErrorKind.TOKEN_EXPIRED, platform)
    if raw.status == 403:
        return ClassifiedError("LINKEDIN_FORBIDDEN", "LinkedIn posting forbidden", False,
                               PlatformErrorKind.PERMISSION_DENIED, platform)
    if raw.status == 422:
        return ClassifiedError("LINKEDIN_VALIDATION_ERROR", "LinkedIn rejected the content", False,
                               PlatformErrorKind.CONTENT_ERROR, platform)
    return _fallback(platform, "LINKEDIN_UNKNOWN_ERROR", raw)


# ============================================================================
# TIKTOK
# ============================================================================

def _classify_tiktok(platform: str, raw: RawPlatformError) -> ClassifiedError:
    error = raw.body_dict().get("error")
    error_code = error.get("code") if isinstance(error, dict) else error

    if raw.status == 401:
        return ClassifiedError("TIKTOK_TOKEN_EXPIRED", "TikTok access token has expired", False,
                               PlatformErrorKind.TOKEN_EXPIRED, platform)
    if raw.status == 403:
        return ClassifiedError("TIKTOK_PERMISSION_DENIED", "Insufficient permissions for TikTok API", False,
                               PlatformErrorKind.PERMISSION_DENIED, platform)
    if raw.status == 429:
        try:
            retry_after = int(raw.header("retry-after") or 0) or 3600
        except ValueError:
            retry_after = 3600
        return ClassifiedError("TIKTOK_RATE_LIMIT", "TikTok API rate limit exceeded", True,
                               PlatformErrorKind.RATE_LIMIT, platform, retry_after=retry_after)
    if raw.status == 400 and error_code == "content_too_long":
        return ClassifiedError("CONTENT_TOO_LONG", "Content exceeds TikTok character limits", False,
                               PlatformErrorKind.CONTENT_ERROR, platform)
    if raw.status == 400 and error_code == "invalid_media":
        return ClassifiedError("INVALID_MEDIA", "Media format not supported by TikTok", False,
                               PlatformErrorKind.CONTENT_ERROR, platform)
    if raw.status == 503:
        return ClassifiedError("TIKTOK_TEMPORARILY_BLOCKED", "TikTok API temporarily unavailable", True,
                               PlatformErrorKind.SERVER_ERROR, platform, retry_after=1800)
    return _fallback(platform, "TIKTOK_API_ERROR", raw)


# ============================================================================
# GENERIC (amazon, youtube, anything else)
# ============================================================================

def _classify_generic(platform: str, raw: RawPlatformError) -> ClassifiedError:
    prefix = platform.upper()
    if raw.status == 401:
        return ClassifiedError(f"{prefix}_TOKEN_EXPIRED", f"{platform} access token is invalid or expired", False,
                               PlatformErrorKind.TOKEN_EXPIRED, platform)
    if raw.status == 403:
        return ClassifiedError(f"{prefix}_PERMISSION_DENIED", f"Insufficient permissions for {platform}", False,
                               PlatformErrorKind.PERMISSION_DENIED, platform)
    if raw.status == 429:
        try:
            retry_after = int(raw.header("retry-after") or 0) or 3600
        except ValueError:
            retry_after = 3600
        return ClassifiedError(f"{prefix}_RATE_LIMIT", f"{platform} rate limit exceeded", True,
                               PlatformErrorKind.RATE_LIMIT, platform, retry_after=retry_after)
    if _is_server_error(raw):
        return ClassifiedError(f"{prefix}_SERVER_ERROR", f"{platform} server error", True,
                               PlatformErrorKind.SERVER_ERROR, platform)
    return _fallback(platform, "UNKNOWN_PLATFORM_ERROR", raw)


PLATFORM_CLASSIFIERS = {
    "facebook": _classify_facebook,
    "instagram": _classify_facebook,
    "twitter": _classify_twitter,
    "linkedin": _classify_linkedin,
    "tiktok": _classify_tiktok,
}


def classify(platform: str, raw: RawPlatformError) -> ClassifiedError:
    """Classify a platform failure"""
    classifier = PLATFORM_CLASSIFIERS.get(platform, _classify_generic)
    classified = classifier(platform, raw)
    platform_errors_counter.labels(platform=platform, kind=classified.kind.value).inc()
    logger.info(
        f"Classified {platform} error: status={raw.status} -> {classified.code} "
        f"(retryable={classified.is_retryable}, retry_after={classified.retry_after})"
    )
    return classified
