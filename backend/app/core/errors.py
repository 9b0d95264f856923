"""Application error types

Flow errors carry a short ``reason`` that is safe to put in a redirect URL.
Provider request errors keep the raw HTTP details for the error classifier,
those details are only ever written to server logs.
"""
from enum import Enum
from typing import Any, Dict, Optional


class FailureReason(str, Enum):
    """Reason tags used on the connections error redirect"""
    NOT_AUTHENTICATED = "not_authenticated"
    USER_DENIED = "user_denied"
    MISSING_PARAMETERS = "missing_parameters"
    INVALID_STATE = "invalid_state"
    TOKEN_MISMATCH = "token_mismatch"
    OAUTH_FAILED = "oauth_failed"
    USER_INFO_FAILED = "user_info_failed"


class AppError(Exception):
    """Base class for errors raised by the application"""

    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class NotAuthenticatedError(AppError):
    """Raised when an operation needs a logged-in session"""

    def __init__(self, message: str = "Not authenticated. Please log in."):
        super().__init__(message, code="NOT_AUTHENTICATED", status_code=401)


class OAuthFlowError(AppError):
    """A failed step of an OAuth connect flow"""

    def __init__(self, reason: FailureReason, message: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message or reason.value, code=reason.name, status_code=400)
        self.reason = reason
        self.provider = provider


class ProviderRequestError(AppError):
    """An HTTP call to a social platform failed"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, code="PROVIDER_REQUEST_FAILED", status_code=502)
        self.status = status
        self.body = body
        self.headers = headers or {}
        self.provider = provider


class ProviderConfigurationError(AppError):
    """Client credentials for a provider are not configured"""

    def __init__(self, provider: str):
        super().__init__(
            f"{provider} OAuth credentials not configured",
            code="PROVIDER_NOT_CONFIGURED",
            status_code=400,
        )
        self.provider = provider


class UnknownPlatformError(AppError):
    """The requested platform is not supported"""

    def __init__(self, platform: str):
        super().__init__(f"Unsupported platform: {platform}", code="UNKNOWN_PLATFORM", status_code=400)
        self.platform = platform
