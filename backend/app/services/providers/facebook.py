"""Facebook and Instagram (Graph API) OAuth clients"""
import logging
from typing import Any, Dict, Optional, Tuple

from app.core.config import (
    settings, FACEBOOK_AUTH_URL, FACEBOOK_TOKEN_URL, FACEBOOK_GRAPH_API_BASE,
    FACEBOOK_SCOPES, INSTAGRAM_SCOPES
)
from app.core.errors import ProviderRequestError
from app.services.providers.base import OAuthFamily, OAuthProvider, ProviderProfile, TokenSet

facebook_logger = logging.getLogger("facebook")
instagram_logger = logging.getLogger("instagram")


class FacebookProvider(OAuthProvider):
    name = "facebook"
    family = OAuthFamily.OAUTH2
    authorize_url = FACEBOOK_AUTH_URL
    token_url = FACEBOOK_TOKEN_URL
    scopes = FACEBOOK_SCOPES
    capabilities = {"can_publish_content": True, "can_access_insights": True, "can_manage_ads": True}

    def client_credentials(self) -> Tuple[str, str]:
        return settings.FACEBOOK_APP_ID, settings.FACEBOOK_APP_SECRET

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        client_id, client_secret = self.require_credentials()
        data = await self._send("POST", self.token_url, data={
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": self.callback_url,
            "code": code,
        })
        return self._token_set(data)

    async def exchange_long_lived_token(self, access_token: str) -> TokenSet:
        """Trade a short-lived user token for a ~60 day token"""
        client_id, client_secret = self.require_credentials()
        data = await self._send("GET", self.token_url, params={
            "grant_type": "fb_exchange_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "fb_exchange_token": access_token,
        })
        return self._token_set(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        # Graph has no refresh tokens; a still-valid long-lived token is re-exchanged
        return await self.exchange_long_lived_token(refresh_token)

    async def fetch_profile(self, tokens: TokenSet) -> ProviderProfile:
        data = await self._send("GET", f"{FACEBOOK_GRAPH_API_BASE}/me", params={
            "fields": "id,name,email,picture.type(large)",
            "access_token": tokens.access_token,
        })
        if not data.get("id"):
            raise ProviderRequestError("Facebook profile response had no id", body=data, provider=self.name)

        picture = ((data.get("picture") or {}).get("data") or {}).get("url")
        facebook_logger.info(f"Fetched Facebook profile {data['id']}")
        return ProviderProfile(
            provider_id=str(data["id"]),
            username=data.get("name"),
            display_name=data.get("name"),
            email=data.get("email"),
            profile_image=picture,
        )

    async def revoke(self, access_token: str) -> None:
        await self._send("DELETE", f"{FACEBOOK_GRAPH_API_BASE}/me/permissions", params={"access_token": access_token})

    def _token_set(self, data: Dict[str, Any]) -> TokenSet:
        data = self._require_access_token(self.name, data)
        return TokenSet(
            access_token=data["access_token"],
            expires_in=data.get("expires_in"),
        )


class InstagramProvider(FacebookProvider):
    """Instagram Business accounts, authorized through the Facebook dialog"""
    name = "instagram"
    scopes = INSTAGRAM_SCOPES
    capabilities = {"can_publish_content": True, "can_access_insights": True, "can_manage_ads": False}

    async def fetch_profile(self, tokens: TokenSet) -> ProviderProfile:
        data = await self._send("GET", f"{FACEBOOK_GRAPH_API_BASE}/me/accounts", params={
            "fields": "id,name,access_token,instagram_business_account{id,username,name,profile_picture_url,followers_count,media_count}",
            "access_token": tokens.access_token,
        })

        for page in data.get("data") or []:
            account = page.get("instagram_business_account")
            if account and account.get("id"):
                instagram_logger.info(f"Found Instagram business account {account['id']} on page {page.get('id')}")
                return ProviderProfile(
                    provider_id=str(account["id"]),
                    username=account.get("username"),
                    display_name=account.get("name") or account.get("username"),
                    profile_image=account.get("profile_picture_url"),
                    followers_count=account.get("followers_count"),
                    media_count=account.get("media_count"),
                    extra={"page_id": page.get("id")},
                    analytics={
                        "followers": account.get("followers_count") or 0,
                        "media": account.get("media_count") or 0,
                        "page_id": page.get("id"),
                    },
                )

        instagram_logger.warning("No Facebook page with a linked Instagram business account")
        raise ProviderRequestError(
            "No Instagram business account is linked to the authorized Facebook pages",
            body=data,
            provider=self.name
        )
