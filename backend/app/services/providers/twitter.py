"""Twitter/X clients: OAuth 2.0 with PKCE and the legacy OAuth 1.0a flow"""
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from oauthlib.oauth1 import Client as OAuth1Client

from app.core.config import (
    settings, TWITTER_AUTH_URL, TWITTER_TOKEN_URL, TWITTER_REVOKE_URL,
    TWITTER_USERS_ME_URL, TWITTER_REQUEST_TOKEN_URL, TWITTER_OAUTH1_AUTHORIZE_URL,
    TWITTER_ACCESS_TOKEN_URL, TWITTER_VERIFY_CREDENTIALS_URL, TWITTER_INVALIDATE_TOKEN_URL,
    TWITTER_SCOPES
)
from app.core.errors import ProviderRequestError
from app.core.logging import mask_token
from app.services.providers.base import OAuthFamily, OAuthProvider, ProviderProfile, TokenSet

twitter_logger = logging.getLogger("twitter")


class TwitterProvider(OAuthProvider):
    name = "twitter"
    family = OAuthFamily.OAUTH2_PKCE
    authorize_url = TWITTER_AUTH_URL
    token_url = TWITTER_TOKEN_URL
    scopes = TWITTER_SCOPES
    scope_separator = " "
    capabilities = {"can_publish_content": True, "can_access_insights": True, "can_manage_ads": False}

    def client_credentials(self) -> Tuple[str, str]:
        return settings.TWITTER_CLIENT_ID, settings.TWITTER_CLIENT_SECRET

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        if not code_verifier:
            raise ProviderRequestError("Twitter code exchange requires a PKCE code verifier", provider=self.name)
        client_id, client_secret = self.require_credentials()
        data = await self._send("POST", self.token_url, auth=(client_id, client_secret), data={
            "code": code,
            "grant_type": "authorization_code",
            "client_id": client_id,
            "redirect_uri": self.callback_url,
            "code_verifier": code_verifier,
        })
        return self._token_set(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        client_id, client_secret = self.require_credentials()
        data = await self._send("POST", self.token_url, auth=(client_id, client_secret), data={
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "client_id": client_id,
        })
        return self._token_set(data)

    async def fetch_profile(self, tokens: TokenSet) -> ProviderProfile:
        data = await self._send(
            "GET",
            TWITTER_USERS_ME_URL,
            params={"user.fields": "id,name,username,profile_image_url,verified,public_metrics"},
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        user = (data or {}).get("data") or {}
        if not user.get("id"):
            raise ProviderRequestError("Twitter profile response had no user id", body=data, provider=self.name)

        metrics = user.get("public_metrics") or {}
        return ProviderProfile(
            provider_id=str(user["id"]),
            username=user.get("username"),
            display_name=user.get("name"),
            profile_image=user.get("profile_image_url"),
            followers_count=metrics.get("followers_count"),
            media_count=metrics.get("tweet_count"),
            verified=bool(user.get("verified")),
            analytics={
                "followers": metrics.get("followers_count") or 0,
                "following": metrics.get("following_count") or 0,
                "tweets": metrics.get("tweet_count") or 0,
                "verified": bool(user.get("verified")),
            },
        )

    async def revoke(self, access_token: str) -> None:
        client_id, client_secret = self.require_credentials()
        await self._send("POST", TWITTER_REVOKE_URL, auth=(client_id, client_secret), data={
            "token": access_token,
            "token_type_hint": "access_token",
            "client_id": client_id,
        })

    def _token_set(self, data: Dict[str, Any]) -> TokenSet:
        data = self._require_access_token(self.name, data)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scope=data.get("scope"),
        )


class TwitterOAuth1Provider(OAuthProvider):
    """Three-legged OAuth 1.0a, needed for the v1.1 media upload endpoints"""
    name = "twitter"
    family = OAuthFamily.OAUTH1
    authorize_url = TWITTER_OAUTH1_AUTHORIZE_URL
    token_url = TWITTER_ACCESS_TOKEN_URL
    capabilities = {"can_publish_content": True, "can_access_insights": True, "can_manage_ads": False}

    @property
    def flow_key(self) -> str:
        return "twitter_oauth1"

    @property
    def callback_url(self) -> str:
        return f"{settings.BACKEND_URL}/api/auth/twitter/oauth1/callback"

    def client_credentials(self) -> Tuple[str, str]:
        return settings.TWITTER_API_KEY, settings.TWITTER_API_SECRET

    def _sign(self, method: str, url: str, params: Optional[Dict[str, str]] = None,
              **client_kwargs) -> Tuple[str, Dict[str, str]]:
        """Sign a bodiless request with HMAC-SHA1, returns (uri, headers)

        ``client_kwargs`` go to oauthlib's Client (resource_owner_key,
        resource_owner_secret, callback_uri, verifier).
        """
        consumer_key, consumer_secret = self.require_credentials()
        client = OAuth1Client(consumer_key, client_secret=consumer_secret, **client_kwargs)
        uri = f"{url}?{urlencode(params)}" if params else url
        signed_uri, headers, _ = client.sign(uri, http_method=method)
        return signed_uri, headers

    async def request_token(self) -> Tuple[str, str]:
        """Step 1: obtain a request token bound to our callback URL"""
        uri, headers = self._sign("POST", TWITTER_REQUEST_TOKEN_URL, callback_uri=self.callback_url)
        body = await self._send("POST", uri, expect_json=False, headers=headers)
        values = dict(parse_qsl(body))
        if values.get("oauth_callback_confirmed") != "true" or not values.get("oauth_token"):
            raise ProviderRequestError("Twitter did not confirm the OAuth 1.0a callback", body=body, provider=self.name)
        twitter_logger.info(f"Obtained Twitter OAuth 1.0a request token {mask_token(values['oauth_token'])}")
        return values["oauth_token"], values.get("oauth_token_secret", "")

    def build_authorize_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        # For OAuth 1.0a the request token plays the role of state
        return f"{self.authorize_url}?{urlencode({'oauth_token': state})}"

    async def access_token(self, oauth_token: str, oauth_token_secret: str, oauth_verifier: str) -> TokenSet:
        """Step 3: trade the authorized request token for an access token pair"""
        uri, headers = self._sign(
            "POST", TWITTER_ACCESS_TOKEN_URL,
            resource_owner_key=oauth_token, resource_owner_secret=oauth_token_secret,
            verifier=oauth_verifier,
        )
        body = await self._send("POST", uri, expect_json=False, headers=headers)
        values = dict(parse_qsl(body))
        if not values.get("oauth_token") or not values.get("oauth_token_secret"):
            raise ProviderRequestError("Twitter access token response was incomplete", body=body, provider=self.name)
        return TokenSet(
            access_token=values["oauth_token"],
            access_token_secret=values["oauth_token_secret"],
            provider_user_id=values.get("user_id"),
            screen_name=values.get("screen_name"),
        )

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        raise ProviderRequestError("OAuth 1.0a uses access_token(), not a code exchange", provider=self.name)

    async def fetch_profile(self, tokens: TokenSet) -> ProviderProfile:
        query = {"include_entities": "false", "skip_status": "true"}
        uri, headers = self._sign(
            "GET", TWITTER_VERIFY_CREDENTIALS_URL, params=query,
            resource_owner_key=tokens.access_token, resource_owner_secret=tokens.access_token_secret,
        )
        data = await self._send("GET", uri, headers=headers)
        user_id = (data or {}).get("id_str") or tokens.provider_user_id
        if not user_id:
            raise ProviderRequestError("Twitter credentials response had no user id", body=data, provider=self.name)
        return ProviderProfile(
            provider_id=str(user_id),
            username=data.get("screen_name") or tokens.screen_name,
            display_name=data.get("name"),
            profile_image=data.get("profile_image_url_https"),
            followers_count=data.get("followers_count"),
            media_count=data.get("statuses_count"),
            verified=bool(data.get("verified")),
            analytics={
                "followers": data.get("followers_count") or 0,
                "following": data.get("friends_count") or 0,
                "tweets": data.get("statuses_count") or 0,
                "verified": bool(data.get("verified")),
            },
        )

    async def revoke_credentials(self, oauth_token: str, oauth_token_secret: str) -> None:
        uri, headers = self._sign(
            "POST", TWITTER_INVALIDATE_TOKEN_URL,
            resource_owner_key=oauth_token, resource_owner_secret=oauth_token_secret,
        )
        await self._send("POST", uri, headers=headers)
