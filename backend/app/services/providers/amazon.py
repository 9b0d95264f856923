"""Login with Amazon client"""
from typing import Any, Dict, Optional, Tuple

from app.core.config import settings, AMAZON_AUTH_URL, AMAZON_TOKEN_URL, AMAZON_PROFILE_URL, AMAZON_SCOPES
from app.core.errors import ProviderRequestError
from app.services.providers.base import OAuthFamily, OAuthProvider, ProviderProfile, TokenSet


class AmazonProvider(OAuthProvider):
    name = "amazon"
    family = OAuthFamily.OAUTH2
    authorize_url = AMAZON_AUTH_URL
    token_url = AMAZON_TOKEN_URL
    scopes = AMAZON_SCOPES
    scope_separator = " "
    capabilities = {"can_publish_content": False, "can_access_insights": True, "can_manage_ads": True}

    def client_credentials(self) -> Tuple[str, str]:
        return settings.AMAZON_CLIENT_ID, settings.AMAZON_CLIENT_SECRET

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        client_id, client_secret = self.require_credentials()
        data = await self._send("POST", self.token_url, data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.callback_url,
            "client_id": client_id,
            "client_secret": client_secret,
        })
        return self._token_set(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        client_id, client_secret = self.require_credentials()
        data = await self._send("POST", self.token_url, data={
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        })
        return self._token_set(data)

    async def fetch_profile(self, tokens: TokenSet) -> ProviderProfile:
        data = await self._send("GET", AMAZON_PROFILE_URL, headers={"Authorization": f"Bearer {tokens.access_token}"})
        if not (data or {}).get("user_id"):
            raise ProviderRequestError("Amazon profile response had no user_id", body=data, provider=self.name)
        return ProviderProfile(
            provider_id=str(data["user_id"]),
            username=data.get("name"),
            display_name=data.get("name"),
            email=data.get("email"),
            analytics={"email": data.get("email") or "", "name": data.get("name") or ""},
        )

    def _token_set(self, data: Dict[str, Any]) -> TokenSet:
        data = self._require_access_token(self.name, data)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
        )
