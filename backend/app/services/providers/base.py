"""Base class and value types shared by the OAuth provider clients"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode
import logging

import httpx

from app.core.config import settings
from app.core.errors import ProviderConfigurationError, ProviderRequestError

logger = logging.getLogger("oauth")


class OAuthFamily(str, Enum):
    OAUTH2 = "oauth2"
    OAUTH2_PKCE = "oauth2_pkce"
    OAUTH1 = "oauth1"


@dataclass
class TokenSet:
    """Tokens returned by a provider token endpoint"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    access_token_secret: Optional[str] = None  # OAuth 1.0a only
    provider_user_id: Optional[str] = None
    screen_name: Optional[str] = None

    def expires_at(self, now: datetime) -> Optional[datetime]:
        """Absolute expiry, None when the provider did not send expires_in"""
        if not self.expires_in:
            return None
        return now + timedelta(seconds=int(self.expires_in))


@dataclass
class ProviderProfile:
    """Identity of the connected platform account"""
    provider_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    profile_image: Optional[str] = None
    followers_count: Optional[int] = None
    media_count: Optional[int] = None
    verified: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)
    analytics: Dict[str, Any] = field(default_factory=dict)

    def analytics_summary(self) -> Dict[str, Any]:
        """Metrics snapshot stored with the provider row on every connect"""
        if self.analytics:
            return dict(self.analytics)
        return {
            "display_name": self.display_name or "",
            "followers": self.followers_count or 0,
            "media": self.media_count or 0,
        }

    def as_row_fields(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "display_name": self.display_name,
            "email": self.email,
            "profile_image": self.profile_image,
            "followers_count": self.followers_count,
            "media_count": self.media_count,
        }


class OAuthProvider(ABC):
    """Talks to one platform's OAuth and identity endpoints.

    Subclasses define the endpoints and how responses map onto TokenSet and
    ProviderProfile. All HTTP goes through the injected httpx.AsyncClient so
    callers control timeouts and tests can swap the transport.
    """

    name: str = ""
    family: OAuthFamily = OAuthFamily.OAUTH2
    authorize_url: str = ""
    token_url: str = ""
    scopes: List[str] = []
    scope_separator: str = ","
    capabilities: Dict[str, bool] = {}

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self.http = http

    @property
    def flow_key(self) -> str:
        """Session key of this provider's in-flight transaction"""
        return self.name

    @property
    def uses_pkce(self) -> bool:
        return self.family == OAuthFamily.OAUTH2_PKCE

    @property
    def callback_url(self) -> str:
        return f"{settings.BACKEND_URL}/api/auth/{self.name}/callback"

    @abstractmethod
    def client_credentials(self) -> Tuple[str, str]:
        """Return (client_id, client_secret) from settings"""

    def require_credentials(self) -> Tuple[str, str]:
        client_id, client_secret = self.client_credentials()
        if not client_id or not client_secret:
            raise ProviderConfigurationError(self.name)
        return client_id, client_secret

    def authorize_params(self, state: str, code_challenge: Optional[str] = None) -> Dict[str, str]:
        client_id, _ = self.require_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": self.scope_separator.join(self.scopes),
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return params

    def build_authorize_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        return f"{self.authorize_url}?{urlencode(self.authorize_params(state, code_challenge))}"

    @abstractmethod
    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        """Exchange an authorization code for tokens"""

    @abstractmethod
    async def fetch_profile(self, tokens: TokenSet) -> ProviderProfile:
        """Fetch the identity of the account the tokens belong to"""

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        raise ProviderRequestError(f"{self.name} does not support token refresh", provider=self.name)

    async def revoke(self, access_token: str) -> None:
        """Revoke an access token at the provider (no-op by default)"""
        logger.info(f"{self.name} has no revoke endpoint, skipping revocation")

    async def _send(self, method: str, url: str, expect_json: bool = True, **kwargs) -> Any:
        """Send a request and return the parsed body

        Raises:
            ProviderRequestError: On transport failure, non-2xx status or unparsable body
        """
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderRequestError(f"{self.name} request to {url} failed: {type(e).__name__}", provider=self.name) from e

        body: Any
        try:
            body = response.json() if expect_json else response.text
        except ValueError:
            body = response.text
            if response.status_code < 400:
                raise ProviderRequestError(
                    f"{self.name} returned an unparsable body from {url}",
                    status=response.status_code,
                    body=body,
                    headers=dict(response.headers),
                    provider=self.name
                )

        if response.status_code >= 400:
            logger.warning(f"{self.name} request to {url} failed with HTTP {response.status_code}: {body}")
            raise ProviderRequestError(
                f"{self.name} request failed with HTTP {response.status_code}",
                status=response.status_code,
                body=body,
                headers=dict(response.headers),
                provider=self.name
            )
        return body

    @staticmethod
    def _require_access_token(provider: str, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict) or not data.get("access_token"):
            raise ProviderRequestError(f"{provider} token response did not contain an access token", body=data, provider=provider)
        return data
