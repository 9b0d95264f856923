"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.auth_provider import AuthProvider

# Export all for convenience
__all__ = ["Base", "User", "AuthProvider"]
