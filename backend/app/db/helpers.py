"""Database helper functions for users and connected provider accounts"""
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any
import json
import logging
from datetime import datetime, timezone

from app.models.user import User
from app.models.auth_provider import AuthProvider
from app.db.session import SessionLocal
from app.utils.encryption import encrypt, decrypt

logger = logging.getLogger(__name__)

# Profile columns a reconnect is allowed to refresh
PROFILE_FIELDS = (
    "username", "display_name", "email", "profile_image",
    "followers_count", "media_count",
)

CAPABILITY_FIELDS = ("can_publish_content", "can_access_insights", "can_manage_ads")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_user_by_id(user_id: str, db: Session = None) -> Optional[User]:
    """Get user by ID

    Args:
        user_id: User ID
        db: Database session (if None, creates its own)
    """
    if not user_id:
        return None

    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(User).filter(User.id == user_id).first()
    finally:
        if should_close:
            db.close()


def get_user_by_email(email: str, db: Session = None) -> Optional[User]:
    """Get user by email"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(User).filter(User.email == email).first()
    finally:
        if should_close:
            db.close()


def find_user_by_provider_account(provider: str, provider_id: str, db: Session = None) -> Optional[User]:
    """Find the user that already linked this provider account (oldest link wins)"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return (
            db.query(User)
            .join(AuthProvider, AuthProvider.user_id == User.id)
            .filter(AuthProvider.provider == provider, AuthProvider.provider_id == provider_id)
            .order_by(AuthProvider.created_at.asc(), AuthProvider.id.asc())
            .first()
        )
    finally:
        if should_close:
            db.close()


def create_user(email: str, username: Optional[str] = None, image: Optional[str] = None, db: Session = None) -> User:
    """Create a new user"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        user = User(email=email, username=username, image=image)
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Created user {user.id} ({email})")
        return user
    finally:
        if should_close:
            db.close()


def get_or_create_user_by_email(email: str, username: Optional[str] = None, image: Optional[str] = None, db: Session = None) -> User:
    """Return the user with this email, creating it when missing"""
    user = get_user_by_email(email, db=db)
    if user:
        return user
    return create_user(email, username=username, image=image, db=db)


def upsert_auth_provider(
    user_id: str,
    provider: str,
    provider_id: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    oauth1_token: Optional[str] = None,
    access_token_secret: Optional[str] = None,
    scopes: Optional[List[str]] = None,
    profile: Optional[Dict[str, Any]] = None,
    capabilities: Optional[Dict[str, bool]] = None,
    analytics_summary: Optional[Dict[str, Any]] = None,
    db: Session = None
) -> AuthProvider:
    """Create or update the provider row keyed by (user_id, provider, provider_id)

    A None refresh_token or OAuth 1.0a credential keeps the stored value, so an
    OAuth 2.0 reconnect never drops credentials issued by the OAuth 1.0a flow
    and the other way round. ``expires_at`` is always overwritten; None means
    the token does not expire.
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        row = db.query(AuthProvider).filter(
            AuthProvider.user_id == user_id,
            AuthProvider.provider == provider,
            AuthProvider.provider_id == provider_id
        ).first()

        if row is None:
            row = AuthProvider(user_id=user_id, provider=provider, provider_id=provider_id)
            db.add(row)

        row.access_token = encrypt(access_token)
        if refresh_token is not None:
            row.refresh_token = encrypt(refresh_token)
        if oauth1_token is not None:
            row.oauth1_token = encrypt(oauth1_token)
        if access_token_secret is not None:
            row.access_token_secret = encrypt(access_token_secret)
        row.expires_at = expires_at
        if scopes is not None:
            row.scopes = ",".join(scopes)

        for field in PROFILE_FIELDS:
            value = (profile or {}).get(field)
            if value is not None:
                setattr(row, field, value)
        for field in CAPABILITY_FIELDS:
            if capabilities and field in capabilities:
                setattr(row, field, bool(capabilities[field]))
        if analytics_summary is not None:
            row.analytics_summary = json.dumps(analytics_summary)

        row.is_active = True
        row.updated_at = datetime.now(timezone.utc)

        db.commit()
        db.refresh(row)
        return row
    finally:
        if should_close:
            db.close()


def patch_auth_provider_secret(
    row_id: int,
    user_id: str,
    oauth1_token: str,
    access_token_secret: str,
    db: Session = None
) -> Optional[AuthProvider]:
    """Attach OAuth 1.0a credentials to an existing row

    Only the OAuth 1.0a token pair and updated_at are written. Returns None when
    the row no longer exists or belongs to another user.
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        row = db.query(AuthProvider).filter(
            AuthProvider.id == row_id,
            AuthProvider.user_id == user_id
        ).first()
        if row is None:
            return None

        row.oauth1_token = encrypt(oauth1_token)
        row.access_token_secret = encrypt(access_token_secret)
        row.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(row)
        return row
    finally:
        if should_close:
            db.close()


def get_auth_provider(user_id: str, provider: str, db: Session = None) -> Optional[AuthProvider]:
    """Get the most recently updated active row for a user and provider"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(AuthProvider).filter(
            AuthProvider.user_id == user_id,
            AuthProvider.provider == provider,
            AuthProvider.is_active.is_(True)
        ).order_by(AuthProvider.updated_at.desc()).first()
    finally:
        if should_close:
            db.close()


def get_auth_provider_by_id(row_id: int, user_id: str, db: Session = None) -> Optional[AuthProvider]:
    """Get a row by ID, only when it belongs to the user"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(AuthProvider).filter(
            AuthProvider.id == row_id,
            AuthProvider.user_id == user_id
        ).first()
    finally:
        if should_close:
            db.close()


def get_auth_provider_for_account(user_id: str, provider: str, provider_id: str, db: Session = None) -> Optional[AuthProvider]:
    """Get the user's row for one specific provider account"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(AuthProvider).filter(
            AuthProvider.user_id == user_id,
            AuthProvider.provider == provider,
            AuthProvider.provider_id == provider_id
        ).first()
    finally:
        if should_close:
            db.close()


def get_expiring_providers(user_id: str, before: datetime, db: Session = None) -> List[AuthProvider]:
    """Get active rows whose token expires before the given time

    Rows without an expiry (OAuth 1.0a, long-lived tokens) are never returned.
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(AuthProvider).filter(
            AuthProvider.user_id == user_id,
            AuthProvider.is_active.is_(True),
            AuthProvider.expires_at.isnot(None),
            AuthProvider.expires_at <= before
        ).all()
    finally:
        if should_close:
            db.close()


def update_provider_tokens(
    row_id: int,
    access_token: str,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    db: Session = None
) -> Optional[AuthProvider]:
    """Store refreshed OAuth 2.0 tokens on an existing row"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        row = db.query(AuthProvider).filter(AuthProvider.id == row_id).first()
        if row is None:
            return None
        row.access_token = encrypt(access_token)
        if refresh_token is not None:
            row.refresh_token = encrypt(refresh_token)
        row.expires_at = expires_at
        row.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(row)
        return row
    finally:
        if should_close:
            db.close()


def delete_auth_providers(user_id: str, provider: str, db: Session = None) -> int:
    """Delete every row the user has for a provider, returns the number removed"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        count = db.query(AuthProvider).filter(
            AuthProvider.user_id == user_id,
            AuthProvider.provider == provider
        ).delete(synchronize_session=False)
        db.commit()
        return count
    finally:
        if should_close:
            db.close()


def get_provider_credentials(row: AuthProvider) -> Dict[str, Optional[str]]:
    """Decrypt the credentials stored on a provider row

    Raises:
        ValueError: If a stored value cannot be decrypted
    """
    return {
        "access_token": decrypt(row.access_token),
        "refresh_token": decrypt(row.refresh_token),
        "oauth1_token": decrypt(row.oauth1_token),
        "access_token_secret": decrypt(row.access_token_secret),
    }
