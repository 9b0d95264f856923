"""TikTok (Login Kit v2) OAuth client"""
import logging
from typing import Any, Dict, Optional, Tuple

from app.core.config import (
    settings, TIKTOK_AUTH_URL, TIKTOK_TOKEN_URL, TIKTOK_REVOKE_URL,
    TIKTOK_USER_INFO_URL, TIKTOK_SCOPES
)
from app.core.errors import ProviderRequestError
from app.services.providers.base import OAuthFamily, OAuthProvider, ProviderProfile, TokenSet

tiktok_logger = logging.getLogger("tiktok")

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class TikTokProvider(OAuthProvider):
    name = "tiktok"
    family = OAuthFamily.OAUTH2
    authorize_url = TIKTOK_AUTH_URL
    token_url = TIKTOK_TOKEN_URL
    scopes = TIKTOK_SCOPES
    capabilities = {"can_publish_content": True, "can_access_insights": True, "can_manage_ads": False}

    def client_credentials(self) -> Tuple[str, str]:
        return settings.TIKTOK_CLIENT_KEY, settings.TIKTOK_CLIENT_SECRET

    def authorize_params(self, state: str, code_challenge: Optional[str] = None) -> Dict[str, str]:
        params = super().authorize_params(state, code_challenge)
        # TikTok names the client id "client_key"
        params["client_key"] = params.pop("client_id")
        return params

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        client_key, client_secret = self.require_credentials()
        data = await self._send("POST", self.token_url, headers=FORM_HEADERS, data={
            "client_key": client_key,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.callback_url,
        })
        return self._token_set(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        client_key, client_secret = self.require_credentials()
        data = await self._send("POST", self.token_url, headers=FORM_HEADERS, data={
            "client_key": client_key,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return self._token_set(data)

    async def fetch_profile(self, tokens: TokenSet) -> ProviderProfile:
        data = await self._send(
            "GET",
            TIKTOK_USER_INFO_URL,
            params={"fields": "open_id,union_id,avatar_url,display_name,username,follower_count,video_count"},
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        error = (data or {}).get("error") or {}
        if error.get("code") not in (None, "ok"):
            raise ProviderRequestError(f"TikTok user info error: {error.get('code')}", body=data, provider=self.name)

        user = ((data or {}).get("data") or {}).get("user") or {}
        open_id = user.get("open_id") or tokens.provider_user_id
        if not open_id:
            raise ProviderRequestError("TikTok user info had no open_id", body=data, provider=self.name)

        tiktok_logger.info(f"Fetched TikTok profile {open_id}")
        return ProviderProfile(
            provider_id=str(open_id),
            username=user.get("username") or user.get("display_name"),
            display_name=user.get("display_name"),
            profile_image=user.get("avatar_url"),
            followers_count=user.get("follower_count"),
            media_count=user.get("video_count"),
            extra={"union_id": user.get("union_id")},
            analytics={
                "display_name": user.get("display_name") or "",
                "username": user.get("username") or "",
                "union_id": user.get("union_id") or "",
                "avatar_url": user.get("avatar_url") or "",
                "followers": user.get("follower_count") or 0,
                "videos": user.get("video_count") or 0,
            },
        )

    async def revoke(self, access_token: str) -> None:
        client_key, client_secret = self.require_credentials()
        await self._send("POST", TIKTOK_REVOKE_URL, headers=FORM_HEADERS, data={
            "client_key": client_key,
            "client_secret": client_secret,
            "token": access_token,
        })

    def _token_set(self, data: Dict[str, Any]) -> TokenSet:
        data = self._require_access_token(self.name, data)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scope=data.get("scope"),
            provider_user_id=data.get("open_id"),
        )
