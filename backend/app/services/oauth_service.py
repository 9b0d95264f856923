"""OAuth service - orchestration of platform connect, callback, refresh and disconnect flows"""
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from sqlalchemy.orm import Session

from app.core.config import settings, APP_URL, CONNECTIONS_URL, DEFAULT_RETURN_TO
from app.core.errors import (
    AppError, FailureReason, NotAuthenticatedError, OAuthFlowError, ProviderRequestError
)
from app.core.logging import mask_token
from app.core.metrics import oauth_connect_attempts_counter, provider_disconnects_counter, token_refresh_counter
from app.db.helpers import (
    as_utc, get_user_by_id, find_user_by_provider_account, get_or_create_user_by_email,
    upsert_auth_provider, patch_auth_provider_secret, get_auth_provider,
    get_auth_provider_by_id, get_auth_provider_for_account,
    get_expiring_providers, update_provider_tokens, delete_auth_providers,
    get_provider_credentials
)
from app.models.user import User
from app.schemas.session import (
    AccountTokens, AppSession, AugmentExisting, CONNECTION_TYPES, LinkingMode,
    OAuth1Transaction, OAuth2Transaction, Standalone
)
from app.services.error_classifier import RawPlatformError, classify
from app.services.providers import OAUTH_PROVIDERS, TwitterOAuth1Provider, get_provider
from app.services.providers.base import ProviderProfile, TokenSet
from app.services.providers.facebook import FacebookProvider
from app.services.session_service import SessionService, get_session_service
from app.utils.pkce import generate_pkce_pair, generate_state

# Loggers
logger = logging.getLogger(__name__)
oauth_logger = logging.getLogger("oauth")


class FlowState(str, Enum):
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    CALLBACK_PENDING = "callback_pending"
    TOKEN_EXCHANGED = "token_exchanged"
    PROFILE_FETCHED = "profile_fetched"
    PERSISTED = "persisted"
    SESSION_UPDATED = "session_updated"
    FAILED = "failed"


@dataclass
class AuthorizationStart:
    """Result of starting a flow: the session to write back and where to send the browser"""
    session: AppSession
    authorize_url: str


@dataclass
class FlowOutcome:
    """Result of a callback, success or failure, always ending in a redirect"""
    session: AppSession
    redirect_url: str
    state: FlowState
    provider: str
    reason: Optional[FailureReason] = None
    provider_row_id: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.state == FlowState.SESSION_UPDATED


# ============================================================================
# REDIRECT HELPERS
# ============================================================================

def sanitize_return_to(return_to: Optional[str]) -> str:
    """Only same-site relative paths are accepted, anything else falls back to the connections tab"""
    if not return_to or not return_to.startswith("/") or return_to.startswith("//") or "\\" in return_to:
        return DEFAULT_RETURN_TO
    return return_to


def build_error_redirect(reason: FailureReason, provider: str) -> str:
    return f"{CONNECTIONS_URL}&{urlencode({'error': reason.value, 'provider': provider})}"


def build_success_redirect(return_to: str, provider: str, username: Optional[str]) -> str:
    parts = urlsplit(sanitize_return_to(return_to))
    query = dict(parse_qsl(parts.query))
    query.update({
        "success": "true",
        "provider": provider,
        "username": username or "",
        "tab": "connections",
    })
    return f"{APP_URL}{urlunsplit(('', '', parts.path, urlencode(query), ''))}"


def build_connection(
    provider: str,
    profile: ProviderProfile,
    tokens: TokenSet,
    now: float,
    media_upload_enabled: bool = False
):
    """Session snapshot of a connected account"""
    connection_cls, account_cls = CONNECTION_TYPES[provider]
    account_fields: Dict[str, Any] = {
        "provider_id": profile.provider_id,
        "username": profile.username,
        "display_name": profile.display_name,
        "email": profile.email,
        "profile_image": profile.profile_image,
        "followers_count": profile.followers_count,
    }
    if provider == "instagram":
        account_fields["page_id"] = profile.extra.get("page_id")
        account_fields["media_count"] = profile.media_count
    elif provider == "twitter":
        account_fields["verified"] = profile.verified
        account_fields["media_upload_enabled"] = media_upload_enabled
    elif provider == "tiktok":
        account_fields["union_id"] = profile.extra.get("union_id")

    return connection_cls(
        account=account_cls(**account_fields),
        account_tokens=AccountTokens(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=now + int(tokens.expires_in) if tokens.expires_in else None,
        ),
        connected_at=now,
    )


# ============================================================================
# FLOW CONTROLLER
# ============================================================================

class OAuthFlowController:
    """Drives a connect flow from authorize to session update

    Every callback failure clears that flow's transaction and resolves to a
    redirect onto the connections tab with an ``error`` reason.
    """

    def __init__(
        self,
        sessions: Optional[SessionService] = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        clock: Callable[[], float] = time.time
    ):
        self.sessions = sessions or get_session_service()
        self._http_client_factory = http_client_factory or self._default_http_client
        self._clock = clock

    @staticmethod
    def _default_http_client() -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.PROVIDER_HTTP_TIMEOUT)

    def _now_dt(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Authorize
    # ------------------------------------------------------------------

    def begin(self, session: AppSession, provider_name: str, return_to: Optional[str] = None) -> AuthorizationStart:
        """Start an OAuth 2.0 flow and return the provider authorize URL"""
        if not session.is_authenticated:
            raise NotAuthenticatedError()

        provider = get_provider(provider_name)
        state = generate_state()
        code_verifier = code_challenge = None
        if provider.uses_pkce:
            code_verifier, code_challenge = generate_pkce_pair()

        authorize_url = provider.build_authorize_url(state, code_challenge)
        transaction = OAuth2Transaction(
            state=state,
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            return_to=sanitize_return_to(return_to),
            initiated_at=self._clock(),
        )
        session = self.sessions.begin_oauth_transaction(session, provider.flow_key, transaction)
        oauth_logger.info(f"Started {provider_name} OAuth flow for user {session.user_id} (pkce={provider.uses_pkce})")
        return AuthorizationStart(session=session, authorize_url=authorize_url)

    async def begin_oauth1(
        self,
        session: AppSession,
        db: Session,
        return_to: Optional[str] = None,
        augment: Optional[bool] = None
    ) -> AuthorizationStart:
        """Start the Twitter OAuth 1.0a flow

        When the user already has a Twitter row the resulting credentials are
        attached to it. ``augment=False`` asks for standalone linking, which
        still never replaces OAuth 2.0 tokens of the same account.
        """
        if not session.is_authenticated:
            raise NotAuthenticatedError()

        linking: LinkingMode = Standalone()
        if augment is not False:
            existing = get_auth_provider(session.user_id, "twitter", db=db)
            if existing:
                linking = AugmentExisting(existing_provider_row_id=existing.id)
            elif augment:
                oauth_logger.info(f"No Twitter row to augment for user {session.user_id}, using standalone linking")

        async with self._http_client_factory() as http:
            provider = TwitterOAuth1Provider(http)
            try:
                oauth_token, oauth_token_secret = await provider.request_token()
            except ProviderRequestError as e:
                oauth_logger.error(f"Twitter OAuth 1.0a request token failed for user {session.user_id}: {e}")
                raise OAuthFlowError(FailureReason.OAUTH_FAILED, str(e), provider="twitter")

        transaction = OAuth1Transaction(
            oauth_token=oauth_token,
            oauth_token_secret=oauth_token_secret,
            return_to=sanitize_return_to(return_to),
            initiated_at=self._clock(),
            linking=linking,
        )
        session = self.sessions.begin_oauth_transaction(session, provider.flow_key, transaction)
        oauth_logger.info(f"Started Twitter OAuth 1.0a flow for user {session.user_id} ({linking.mode})")
        return AuthorizationStart(session=session, authorize_url=provider.build_authorize_url(oauth_token))

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _fail(
        self,
        session: AppSession,
        flow_key: str,
        provider: str,
        reason: FailureReason,
        reached: FlowState
    ) -> FlowOutcome:
        oauth_logger.warning(f"{provider} OAuth flow failed after {reached.value}: {reason.value}")
        oauth_connect_attempts_counter.labels(provider=provider, outcome=reason.value).inc()
        return FlowOutcome(
            session=self.sessions.complete_oauth_transaction(session, flow_key),
            redirect_url=build_error_redirect(reason, provider),
            state=FlowState.FAILED,
            provider=provider,
            reason=reason,
        )

    def _succeed(self, session: AppSession, provider: str, return_to: str, username: Optional[str], row_id: int) -> FlowOutcome:
        oauth_connect_attempts_counter.labels(provider=provider, outcome="success").inc()
        return FlowOutcome(
            session=session,
            redirect_url=build_success_redirect(return_to, provider, username),
            state=FlowState.SESSION_UPDATED,
            provider=provider,
            provider_row_id=row_id,
        )

    async def complete(self, session: AppSession, provider_name: str, params: Mapping[str, str], db: Session) -> FlowOutcome:
        """Handle an OAuth 2.0 callback"""
        if provider_name not in OAUTH_PROVIDERS:
            raise OAuthFlowError(FailureReason.OAUTH_FAILED, f"Unsupported provider {provider_name}", provider=provider_name)

        flow_key = provider_name
        reached = FlowState.CALLBACK_PENDING

        if params.get("error"):
            oauth_logger.info(f"{provider_name} authorization denied: {params.get('error_description') or params.get('error')}")
            return self._fail(session, flow_key, provider_name, FailureReason.USER_DENIED, reached)

        code, state = params.get("code"), params.get("state")
        if not code or not state:
            return self._fail(session, flow_key, provider_name, FailureReason.MISSING_PARAMETERS, reached)

        transaction = self.sessions.get_oauth_transaction(session, flow_key)
        if not isinstance(transaction, OAuth2Transaction):
            return self._fail(session, flow_key, provider_name, FailureReason.INVALID_STATE, reached)
        if not secrets.compare_digest(transaction.state, state):
            oauth_logger.warning(f"{provider_name} state mismatch for user {session.user_id}")
            return self._fail(session, flow_key, provider_name, FailureReason.INVALID_STATE, reached)

        # The state is single use from here on
        session = self.sessions.complete_oauth_transaction(session, flow_key)

        try:
            async with self._http_client_factory() as http:
                provider = get_provider(provider_name, http)
                try:
                    tokens = await provider.exchange_code(code, transaction.code_verifier)
                except AppError as e:
                    oauth_logger.error(f"{provider_name} token exchange failed: {e}")
                    return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)
                reached = FlowState.TOKEN_EXCHANGED

                if isinstance(provider, FacebookProvider):
                    tokens = await self._upgrade_to_long_lived(provider, tokens)

                try:
                    profile = await provider.fetch_profile(tokens)
                except AppError as e:
                    oauth_logger.error(f"{provider_name} profile fetch failed: {e}")
                    return self._fail(session, flow_key, provider_name, FailureReason.USER_INFO_FAILED, reached)
                reached = FlowState.PROFILE_FETCHED
        except Exception as e:
            oauth_logger.error(f"Unexpected error in {provider_name} callback: {e}", exc_info=True)
            return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)

        try:
            user = self.resolve_local_user(session, provider_name, profile, db)
            scopes = tokens.scope.replace(",", " ").split() if tokens.scope else list(provider.scopes)
            row = upsert_auth_provider(
                user_id=user.id,
                provider=provider_name,
                provider_id=profile.provider_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at(self._now_dt()),
                scopes=scopes,
                profile=profile.as_row_fields(),
                capabilities=provider.capabilities,
                analytics_summary=profile.analytics_summary(),
                db=db
            )
        except Exception as e:
            db.rollback()
            oauth_logger.error(f"Failed to persist {provider_name} account {profile.provider_id}: {e}", exc_info=True)
            return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)
        reached = FlowState.PERSISTED

        try:
            connection = build_connection(
                provider_name, profile, tokens, self._clock(),
                media_upload_enabled=row.access_token_secret is not None
            )
            if session.user_id != user.id:
                session = self.sessions.update_identity(session, user.id, user.email, user.username, user.image)
            session = self.sessions.add_platform_connection(session, connection)
        except Exception as e:
            oauth_logger.error(
                f"{provider_name} provider persisted (row {row.id}) but session update failed: {e}",
                exc_info=True
            )
            return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)

        oauth_logger.info(f"{provider_name} connected for user {user.id} as {profile.username or profile.provider_id}")
        return self._succeed(session, provider_name, transaction.return_to, profile.username, row.id)

    async def complete_oauth1(self, session: AppSession, params: Mapping[str, str], db: Session) -> FlowOutcome:
        """Handle the Twitter OAuth 1.0a callback"""
        provider_name = "twitter"
        flow_key = "twitter_oauth1"
        reached = FlowState.CALLBACK_PENDING

        if params.get("denied"):
            return self._fail(session, flow_key, provider_name, FailureReason.USER_DENIED, reached)

        oauth_token, oauth_verifier = params.get("oauth_token"), params.get("oauth_verifier")
        if not oauth_token or not oauth_verifier:
            return self._fail(session, flow_key, provider_name, FailureReason.MISSING_PARAMETERS, reached)

        transaction = self.sessions.get_oauth_transaction(session, flow_key)
        if not isinstance(transaction, OAuth1Transaction):
            return self._fail(session, flow_key, provider_name, FailureReason.INVALID_STATE, reached)
        if not secrets.compare_digest(transaction.oauth_token, oauth_token):
            oauth_logger.warning(
                f"Twitter OAuth 1.0a token mismatch for user {session.user_id}: "
                f"expected {mask_token(transaction.oauth_token)}, got {mask_token(oauth_token)}"
            )
            return self._fail(session, flow_key, provider_name, FailureReason.TOKEN_MISMATCH, reached)

        session = self.sessions.complete_oauth_transaction(session, flow_key)

        try:
            async with self._http_client_factory() as http:
                provider = TwitterOAuth1Provider(http)
                try:
                    tokens = await provider.access_token(
                        transaction.oauth_token, transaction.oauth_token_secret, oauth_verifier
                    )
                except AppError as e:
                    oauth_logger.error(f"Twitter OAuth 1.0a access token exchange failed: {e}")
                    return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)
                reached = FlowState.TOKEN_EXCHANGED

                try:
                    profile = await provider.fetch_profile(tokens)
                except AppError as e:
                    oauth_logger.error(f"Twitter OAuth 1.0a credential verification failed: {e}")
                    return self._fail(session, flow_key, provider_name, FailureReason.USER_INFO_FAILED, reached)
                reached = FlowState.PROFILE_FETCHED
        except Exception as e:
            oauth_logger.error(f"Unexpected error in Twitter OAuth 1.0a callback: {e}", exc_info=True)
            return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)

        augmented = False
        try:
            user = self.resolve_local_user(session, provider_name, profile, db)
            row = None
            target_id = None
            if isinstance(transaction.linking, AugmentExisting):
                target_id = transaction.linking.existing_provider_row_id
                target = get_auth_provider_by_id(target_id, user.id, db=db)
                if target is None:
                    oauth_logger.warning(f"Twitter row {target_id} to augment is gone, storing OAuth 1.0a credentials standalone")
                    target_id = None
                elif target.provider_id != profile.provider_id:
                    oauth_logger.warning(
                        f"OAuth 1.0a account {profile.provider_id} differs from augmented row account "
                        f"{target.provider_id}, storing it standalone"
                    )
                    target_id = None
            if target_id is None:
                same_account = get_auth_provider_for_account(user.id, provider_name, profile.provider_id, db=db)
                if same_account is not None and same_account.has_oauth2_tokens:
                    target_id = same_account.id

            if target_id is not None:
                row = patch_auth_provider_secret(
                    target_id,
                    user.id,
                    oauth1_token=tokens.access_token,
                    access_token_secret=tokens.access_token_secret,
                    db=db
                )
                augmented = row is not None
            if row is None:
                row = upsert_auth_provider(
                    user_id=user.id,
                    provider=provider_name,
                    provider_id=profile.provider_id,
                    access_token=tokens.access_token,
                    oauth1_token=tokens.access_token,
                    access_token_secret=tokens.access_token_secret,
                    expires_at=None,
                    profile=profile.as_row_fields(),
                    capabilities=provider.capabilities,
                    analytics_summary=profile.analytics_summary(),
                    db=db
                )
        except Exception as e:
            db.rollback()
            oauth_logger.error(f"Failed to persist Twitter OAuth 1.0a credentials: {e}", exc_info=True)
            return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)
        reached = FlowState.PERSISTED

        try:
            if session.user_id != user.id:
                session = self.sessions.update_identity(session, user.id, user.email, user.username, user.image)
            existing = session.connected_platforms.get(provider_name)
            if augmented and existing is not None and existing.account.provider_id == row.provider_id:
                # Keep the OAuth 2.0 tokens already in the session
                connection = existing.model_copy(update={
                    "account": existing.account.model_copy(update={"media_upload_enabled": True})
                })
            elif augmented:
                # Snapshot the OAuth 2.0 tokens of the augmented row
                credentials = get_provider_credentials(row)
                expires_at = as_utc(row.expires_at)
                row_tokens = TokenSet(
                    access_token=credentials["access_token"],
                    refresh_token=credentials["refresh_token"],
                    expires_in=int((expires_at - self._now_dt()).total_seconds()) if expires_at else None,
                )
                connection = build_connection(provider_name, profile, row_tokens, self._clock(), media_upload_enabled=True)
            else:
                connection = build_connection(provider_name, profile, tokens, self._clock(), media_upload_enabled=True)
            session = self.sessions.add_platform_connection(session, connection)
        except Exception as e:
            oauth_logger.error(
                f"Twitter provider persisted (row {row.id}) but session update failed: {e}",
                exc_info=True
            )
            return self._fail(session, flow_key, provider_name, FailureReason.OAUTH_FAILED, reached)

        oauth_logger.info(
            f"Twitter OAuth 1.0a {'augmented' if augmented else 'connected'} for user {user.id} as {profile.username}"
        )
        return self._succeed(session, provider_name, transaction.return_to, profile.username, row.id)

    async def _upgrade_to_long_lived(self, provider: FacebookProvider, tokens: TokenSet) -> TokenSet:
        """Best effort: keep the short-lived token if the exchange fails"""
        try:
            long_lived = await provider.exchange_long_lived_token(tokens.access_token)
            oauth_logger.info(f"Exchanged {provider.name} token for a long-lived token")
            return long_lived
        except AppError as e:
            oauth_logger.warning(f"{provider.name} long-lived token exchange failed, keeping short-lived token: {e}")
            return tokens

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def resolve_local_user(self, session: AppSession, provider: str, profile: ProviderProfile, db: Session) -> User:
        """Pick the local user a provider account is linked to

        Order: the session user, then a user already linked to this provider
        account, then a new user with a placeholder email.
        """
        user = get_user_by_id(session.user_id, db=db) if session.user_id else None
        linked = find_user_by_provider_account(provider, profile.provider_id, db=db)

        if user:
            if linked and linked.id != user.id:
                oauth_logger.warning(
                    f"{provider} account {profile.provider_id} is also linked to user {linked.id}; "
                    f"keeping a separate row for user {user.id}"
                )
            return user

        if linked:
            return linked

        placeholder_email = f"{provider}_{profile.provider_id}@temp.local"
        return get_or_create_user_by_email(
            placeholder_email,
            username=profile.username,
            image=profile.profile_image,
            db=db
        )

    # ------------------------------------------------------------------
    # Disconnect / refresh / status
    # ------------------------------------------------------------------

    async def disconnect(self, session: AppSession, provider_name: str, db: Session) -> AppSession:
        """Revoke (best effort), delete the rows and drop the platform from the session

        Idempotent: disconnecting a platform that is not connected succeeds.
        """
        if not session.user_id:
            raise NotAuthenticatedError()
        if provider_name not in OAUTH_PROVIDERS:
            raise OAuthFlowError(FailureReason.OAUTH_FAILED, f"Unsupported provider {provider_name}", provider=provider_name)

        row = get_auth_provider(session.user_id, provider_name, db=db)
        if row is not None:
            await self._revoke_row(provider_name, row)
            removed = delete_auth_providers(session.user_id, provider_name, db=db)
            oauth_logger.info(f"Disconnected {provider_name} for user {session.user_id} ({removed} row(s) removed)")
        else:
            oauth_logger.info(f"{provider_name} was not connected for user {session.user_id}")

        provider_disconnects_counter.labels(provider=provider_name).inc()
        return self.sessions.remove_platform_connection(session, provider_name)

    async def _revoke_row(self, provider_name: str, row) -> None:
        try:
            credentials = get_provider_credentials(row)
        except ValueError as e:
            oauth_logger.warning(f"Cannot decrypt {provider_name} credentials for revocation: {e}")
            return

        async with self._http_client_factory() as http:
            try:
                if credentials["access_token"]:
                    await get_provider(provider_name, http).revoke(credentials["access_token"])
            except AppError as e:
                oauth_logger.warning(f"{provider_name} token revocation failed (continuing): {e}")

            if provider_name == "twitter" and credentials["oauth1_token"] and credentials["access_token_secret"]:
                try:
                    await TwitterOAuth1Provider(http).revoke_credentials(
                        credentials["oauth1_token"], credentials["access_token_secret"]
                    )
                except AppError as e:
                    oauth_logger.warning(f"Twitter OAuth 1.0a invalidation failed (continuing): {e}")

    async def refresh_expiring_tokens(self, session: AppSession, db: Session) -> Tuple[AppSession, Dict[str, str]]:
        """Refresh provider tokens that expire within the refresh threshold

        Returns the updated session and a per-provider outcome
        (refreshed, skipped or the classified error code).
        """
        if not session.user_id:
            raise NotAuthenticatedError()

        now_dt = self._now_dt()
        threshold = now_dt + timedelta(seconds=settings.TOKEN_REFRESH_THRESHOLD_SECONDS)
        rows = get_expiring_providers(session.user_id, threshold, db=db)
        results: Dict[str, str] = {}

        async with self._http_client_factory() as http:
            for row in rows:
                provider_name = row.provider
                try:
                    credentials = get_provider_credentials(row)
                    provider = get_provider(provider_name, http)
                    if isinstance(provider, FacebookProvider):
                        # Graph tokens cannot be refreshed once expired
                        if as_utc(row.expires_at) <= now_dt:
                            results[provider_name] = "skipped"
                            continue
                        tokens = await provider.refresh_access_token(credentials["access_token"])
                    elif credentials["refresh_token"]:
                        tokens = await provider.refresh_access_token(credentials["refresh_token"])
                    else:
                        results[provider_name] = "skipped"
                        continue
                except ProviderRequestError as e:
                    classified = classify(provider_name, RawPlatformError.from_exception(e))
                    oauth_logger.warning(f"{provider_name} token refresh failed: {classified.code} {classified.message}")
                    token_refresh_counter.labels(provider=provider_name, status="failure").inc()
                    results[provider_name] = classified.code
                    continue
                except (AppError, ValueError) as e:
                    oauth_logger.warning(f"{provider_name} token refresh failed: {e}")
                    token_refresh_counter.labels(provider=provider_name, status="failure").inc()
                    results[provider_name] = "failed"
                    continue

                update_provider_tokens(
                    row.id,
                    tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    expires_at=tokens.expires_at(now_dt),
                    db=db
                )
                existing = session.connected_platforms.get(provider_name)
                if existing is not None:
                    refreshed = existing.model_copy(update={"account_tokens": AccountTokens(
                        access_token=tokens.access_token,
                        refresh_token=tokens.refresh_token or existing.account_tokens.refresh_token,
                        expires_at=self._clock() + int(tokens.expires_in) if tokens.expires_in else None,
                    )})
                    session = self.sessions.add_platform_connection(session, refreshed)
                token_refresh_counter.labels(provider=provider_name, status="success").inc()
                oauth_logger.info(f"Refreshed {provider_name} token for user {session.user_id}")
                results[provider_name] = "refreshed"

        return session, results

    def connection_status(self, session: AppSession) -> Dict[str, Dict[str, Any]]:
        """Connected platforms from the session with their token expiry state"""
        now = self._clock()
        status = {}
        for platform, connection in session.connected_platforms.items():
            status[platform] = {
                "connected": True,
                "username": connection.account.username,
                "expired": connection.account_tokens.is_expired(now),
                "expiresAt": connection.account_tokens.expires_at,
            }
        return status
