"""Session payload schemas

The session is serialized into a signed cookie, so every timestamp is stored as
epoch seconds and nothing here may hold a server-only secret (OAuth 1.0a access
secrets stay in the database).
"""
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from app.core.config import DEFAULT_RETURN_TO


class SessionUser(BaseModel):
    """Display cache for the logged-in user"""
    email: Optional[str] = None
    username: Optional[str] = None
    image: Optional[str] = None


class UserTokens(BaseModel):
    """The application's own login tokens"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None


class AccountTokens(BaseModel):
    """Provider tokens for a connected platform

    ``expires_at`` is epoch seconds, None means the token does not expire.
    """
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


# --- Linking mode for the OAuth 1.0a flow ---

class Standalone(BaseModel):
    """OAuth 1.0a credentials create or replace the whole provider row"""
    mode: Literal["standalone"] = "standalone"


class AugmentExisting(BaseModel):
    """OAuth 1.0a credentials are attached to an existing OAuth 2.0 row"""
    mode: Literal["augment_existing"] = "augment_existing"
    existing_provider_row_id: int


LinkingMode = Annotated[Union[Standalone, AugmentExisting], Field(discriminator="mode")]


# --- In-flight OAuth transactions ---

class OAuth2Transaction(BaseModel):
    kind: Literal["oauth2"] = "oauth2"
    state: str
    code_verifier: Optional[str] = None
    code_challenge: Optional[str] = None
    return_to: str = DEFAULT_RETURN_TO
    initiated_at: float


class OAuth1Transaction(BaseModel):
    kind: Literal["oauth1"] = "oauth1"
    oauth_token: str
    oauth_token_secret: str
    return_to: str = DEFAULT_RETURN_TO
    initiated_at: float
    linking: LinkingMode = Field(default_factory=Standalone)


OAuthTransaction = Annotated[Union[OAuth2Transaction, OAuth1Transaction], Field(discriminator="kind")]


# --- Connected platforms ---

class ConnectedAccount(BaseModel):
    """Identity snapshot shared by every platform"""
    provider_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    profile_image: Optional[str] = None
    followers_count: Optional[int] = None


class FacebookAccount(ConnectedAccount):
    pages_count: Optional[int] = None


class InstagramAccount(ConnectedAccount):
    page_id: Optional[str] = None
    media_count: Optional[int] = None


class TwitterAccount(ConnectedAccount):
    verified: bool = False
    media_upload_enabled: bool = False  # OAuth 1.0a credentials stored server side


class TikTokAccount(ConnectedAccount):
    union_id: Optional[str] = None


class AmazonAccount(ConnectedAccount):
    pass


class _Connection(BaseModel):
    account_tokens: AccountTokens
    connected_at: float


class FacebookConnection(_Connection):
    provider: Literal["facebook"] = "facebook"
    account: FacebookAccount


class InstagramConnection(_Connection):
    provider: Literal["instagram"] = "instagram"
    account: InstagramAccount


class TwitterConnection(_Connection):
    provider: Literal["twitter"] = "twitter"
    account: TwitterAccount


class TikTokConnection(_Connection):
    provider: Literal["tiktok"] = "tiktok"
    account: TikTokAccount


class AmazonConnection(_Connection):
    provider: Literal["amazon"] = "amazon"
    account: AmazonAccount


PlatformConnection = Annotated[
    Union[FacebookConnection, InstagramConnection, TwitterConnection, TikTokConnection, AmazonConnection],
    Field(discriminator="provider"),
]

CONNECTION_TYPES = {
    "facebook": (FacebookConnection, FacebookAccount),
    "instagram": (InstagramConnection, InstagramAccount),
    "twitter": (TwitterConnection, TwitterAccount),
    "tiktok": (TikTokConnection, TikTokAccount),
    "amazon": (AmazonConnection, AmazonAccount),
}


class AppSession(BaseModel):
    """Everything the signed session cookie carries"""
    user_id: str = ""
    plan: str = "FREEMIUM"
    user: Optional[SessionUser] = None
    user_tokens: Optional[UserTokens] = None
    oauth_transactions: Dict[str, OAuthTransaction] = Field(default_factory=dict)
    connected_platforms: Dict[str, PlatformConnection] = Field(default_factory=dict)
    remember_me: bool = False
    version: int = 0
    updated_at: float = 0.0

    @model_validator(mode="after")
    def check_connection_keys(self):
        for platform, connection in self.connected_platforms.items():
            if connection.provider != platform:
                raise ValueError(f"connected_platforms[{platform!r}] holds a {connection.provider} connection")
        return self

    @property
    def is_authenticated(self) -> bool:
        """A session can start a connect flow only with a user id and username"""
        return bool(self.user_id and self.user and self.user.username)
