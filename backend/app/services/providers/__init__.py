"""OAuth provider registry"""
from typing import Optional

import httpx

from app.core.errors import UnknownPlatformError
from app.services.providers.base import OAuthFamily, OAuthProvider, ProviderProfile, TokenSet
from app.services.providers.amazon import AmazonProvider
from app.services.providers.facebook import FacebookProvider, InstagramProvider
from app.services.providers.tiktok import TikTokProvider
from app.services.providers.twitter import TwitterOAuth1Provider, TwitterProvider

OAUTH_PROVIDERS = {
    "facebook": FacebookProvider,
    "instagram": InstagramProvider,
    "twitter": TwitterProvider,
    "tiktok": TikTokProvider,
    "amazon": AmazonProvider,
}


def get_provider(name: str, http: Optional[httpx.AsyncClient] = None) -> OAuthProvider:
    """Instantiate the OAuth 2.0 client for a provider

    Raises:
        UnknownPlatformError: If the provider is not supported
    """
    provider_cls = OAUTH_PROVIDERS.get(name)
    if provider_cls is None:
        raise UnknownPlatformError(name)
    return provider_cls(http)


__all__ = [
    "OAUTH_PROVIDERS", "get_provider", "OAuthFamily", "OAuthProvider", "ProviderProfile",
    "TokenSet", "TwitterOAuth1Provider",
]
