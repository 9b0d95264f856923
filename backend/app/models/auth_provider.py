"""AuthProvider model - one connected social account per row"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class AuthProvider(Base):
    """Connected platform account with encrypted credentials"""
    __tablename__ = "auth_providers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(50), nullable=False)  # facebook, instagram, twitter, tiktok, amazon
    provider_id = Column(String(255), nullable=False)

    # Credentials (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    oauth1_token = Column(Text)  # OAuth 1.0a access token (twitter media upload)
    access_token_secret = Column(Text)  # OAuth 1.0a access token secret
    expires_at = Column(DateTime(timezone=True))  # NULL means the token does not expire
    scopes = Column(Text)

    # Capabilities
    can_publish_content = Column(Boolean, default=False, nullable=False)
    can_access_insights = Column(Boolean, default=False, nullable=False)
    can_manage_ads = Column(Boolean, default=False, nullable=False)

    # Profile snapshot
    username = Column(String(255))
    display_name = Column(String(255))
    email = Column(String(255))
    profile_image = Column(String(1024))
    followers_count = Column(Integer)
    media_count = Column(Integer)
    analytics_summary = Column(Text)  # JSON

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationship
    user = relationship("User", back_populates="auth_providers")

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', 'provider_id', name='uq_auth_providers_user_provider_account'),
        Index('ix_auth_providers_provider_account', 'provider', 'provider_id'),
    )

    @property
    def has_oauth2_tokens(self) -> bool:
        """Row carries an OAuth 2.0 token (refreshable or expiring) that OAuth 1.0a must not replace"""
        return self.refresh_token is not None or self.expires_at is not None
