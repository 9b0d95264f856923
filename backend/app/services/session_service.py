"""Signed session codec and the service that owns every session mutation"""
import base64
import binascii
import logging
import re
import time
from typing import Callable, Optional

from fastapi import Request, Response
from jose import JWTError, jwt
from pydantic import ValidationError

from app.core.config import settings, SESSION_COOKIE_NAME
from app.core.metrics import session_decode_failures_counter
from app.core.security import set_session_cookie, clear_session_cookie
from app.schemas.session import AppSession, OAuthTransaction, SessionUser

logger = logging.getLogger("session")

Clock = Callable[[], float]

_B64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


def _is_canonical_segment(segment: str) -> bool:
    """True when the segment is the unique unpadded base64url form of its bytes

    Base64 has spare low bits in the final character, so several strings can
    decode to the same bytes. Only the canonical one is accepted.
    """
    if not segment or not _B64URL_SEGMENT.match(segment):
        return False
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") == segment


class SessionCodec:
    """Encode and verify the HS256 session JWT

    ``decode`` never raises. Any failure is logged and returns None, callers
    treat that as "no session".
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = settings.SESSION_TTL_SECONDS,
        remember_me_ttl_seconds: int = settings.SESSION_REMEMBER_ME_TTL_SECONDS,
        clock: Clock = time.time
    ):
        if not secret:
            raise ValueError("SESSION_SECRET is required to sign sessions")
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self.remember_me_ttl_seconds = remember_me_ttl_seconds
        self._clock = clock

    def ttl_for(self, session: AppSession) -> int:
        return self.remember_me_ttl_seconds if session.remember_me else self.ttl_seconds

    def encode(self, session: AppSession) -> str:
        issued_at = int(self._clock())
        claims = {
            "sess": session.model_dump(mode="json"),
            "iat": issued_at,
            "exp": issued_at + self.ttl_for(session),
        }
        return jwt.encode(claims, self._secret, algorithm=self.ALGORITHM)

    def decode(self, token: Optional[str]) -> Optional[AppSession]:
        if not token:
            return None

        segments = token.split(".")
        if len(segments) != 3 or not all(_is_canonical_segment(s) for s in segments):
            self._reject("malformed", "Session token is not a canonical JWS")
            return None

        try:
            # Expiry is checked below against the injected clock
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.ALGORITHM],
                options={"verify_exp": False}
            )
        except JWTError as e:
            self._reject("signature", f"Session token verification failed: {e}")
            return None

        expires_at = claims.get("exp")
        if not isinstance(expires_at, (int, float)) or self._clock() > expires_at:
            self._reject("expired", "Session token expired")
            return None

        try:
            return AppSession.model_validate(claims.get("sess"))
        except ValidationError as e:
            self._reject("schema", f"Session payload failed validation: {e.error_count()} error(s)")
            return None

    def peek(self, token: Optional[str]) -> Optional[AppSession]:
        """Read a session WITHOUT verifying it. Display only, never for authorization."""
        if not token:
            return None
        try:
            claims = jwt.get_unverified_claims(token)
            return AppSession.model_validate(claims.get("sess"))
        except (JWTError, ValidationError):
            return None

    def _reject(self, reason: str, message: str) -> None:
        session_decode_failures_counter.labels(reason=reason).inc()
        logger.warning(message)


class SessionService:
    """Reads, writes and mutates sessions

    Mutations return a new AppSession with a bumped version; the caller writes
    it back with ``write``. Concurrent requests are last-write-wins.
    """

    def __init__(
        self,
        codec: SessionCodec,
        transaction_ttl_seconds: int = settings.OAUTH_TRANSACTION_TTL_SECONDS,
        clock: Clock = time.time
    ):
        self.codec = codec
        self.transaction_ttl_seconds = transaction_ttl_seconds
        self._clock = clock

    # --- cookie I/O ---

    def read(self, request: Request) -> AppSession:
        session = self.codec.decode(request.cookies.get(SESSION_COOKIE_NAME))
        if session is None:
            return AppSession()
        tokens = session.user_tokens
        if tokens and tokens.expires_at is not None and tokens.expires_at <= self._clock():
            logger.info(f"Session for user {session.user_id} has expired application tokens")
            return AppSession()
        return session

    def write(self, response: Response, session: AppSession) -> str:
        token = self.codec.encode(session)
        # A remember-me cookie outlives the browser exactly as long as its token
        max_age = self.codec.ttl_for(session) if session.remember_me else None
        set_session_cookie(response, token, max_age=max_age)
        logger.debug(f"Wrote session v{session.version} for user {session.user_id or '<anonymous>'}")
        return token

    def clear(self, response: Response) -> None:
        clear_session_cookie(response)

    # --- mutations ---

    def _touch(self, session: AppSession, **updates) -> AppSession:
        updates["version"] = session.version + 1
        updates["updated_at"] = self._clock()
        return session.model_copy(update=updates)

    def update_identity(self, session: AppSession, user_id: str, email: Optional[str], username: Optional[str], image: Optional[str]) -> AppSession:
        return self._touch(session, user_id=user_id, user=SessionUser(email=email, username=username, image=image))

    def begin_oauth_transaction(self, session: AppSession, flow_key: str, transaction: OAuthTransaction) -> AppSession:
        """Store the transaction for a flow, replacing any in-flight one"""
        if flow_key in session.oauth_transactions:
            logger.info(f"Replacing in-flight {flow_key} OAuth transaction for user {session.user_id}")
        transactions = dict(session.oauth_transactions)
        transactions[flow_key] = transaction
        return self._touch(session, oauth_transactions=transactions)

    def get_oauth_transaction(self, session: AppSession, flow_key: str) -> Optional[OAuthTransaction]:
        """Return the flow's transaction, None when missing or older than the transaction TTL"""
        transaction = session.oauth_transactions.get(flow_key)
        if transaction is None:
            return None
        age = self._clock() - transaction.initiated_at
        if age > self.transaction_ttl_seconds:
            logger.info(f"Stale {flow_key} OAuth transaction ({int(age)}s old) for user {session.user_id}")
            return None
        return transaction

    def complete_oauth_transaction(self, session: AppSession, flow_key: str) -> AppSession:
        """Drop the flow's transaction (single use)"""
        if flow_key not in session.oauth_transactions:
            return session
        transactions = dict(session.oauth_transactions)
        del transactions[flow_key]
        return self._touch(session, oauth_transactions=transactions)

    def add_platform_connection(self, session: AppSession, connection) -> AppSession:
        platforms = dict(session.connected_platforms)
        platforms[connection.provider] = connection
        return self._touch(session, connected_platforms=platforms)

    def remove_platform_connection(self, session: AppSession, platform: str) -> AppSession:
        if platform not in session.connected_platforms:
            return session
        platforms = dict(session.connected_platforms)
        del platforms[platform]
        return self._touch(session, connected_platforms=platforms)


# Lazy initialization - SESSION_SECRET is only required once a session is used
_service = None


def get_session_service() -> SessionService:
    """Get or create the shared SessionService"""
    global _service
    if _service is None:
        codec = SessionCodec(
            settings.SESSION_SECRET, settings.SESSION_TTL_SECONDS, settings.SESSION_REMEMBER_ME_TTL_SECONDS
        )
        _service = SessionService(codec, settings.OAUTH_TRANSACTION_TTL_SECONDS)
    return _service
