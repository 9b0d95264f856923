"""Session summary and logout routes"""
import logging

from fastapi import APIRouter, Depends, Response

from app.core.security import get_current_session
from app.schemas.session import AppSession
from app.services.session_service import get_session_service

session_logger = logging.getLogger("session")

router = APIRouter(prefix="/api/auth", tags=["session"])


@router.get("/session")
def get_session_summary(session: AppSession = Depends(get_current_session)):
    """Display summary of the current session, provider tokens are never included"""
    if not session.is_authenticated:
        return {"authenticated": False}

    return {
        "authenticated": True,
        "userId": session.user_id,
        "plan": session.plan,
        "user": session.user.model_dump(),
        "connectedPlatforms": {
            platform: {
                "username": connection.account.username,
                "displayName": connection.account.display_name,
                "profileImage": connection.account.profile_image,
                "connectedAt": connection.connected_at,
            }
            for platform, connection in session.connected_platforms.items()
        },
    }


@router.post("/logout")
def logout(response: Response, session: AppSession = Depends(get_current_session)):
    """Clear the session cookie"""
    get_session_service().clear(response)
    if session.user_id:
        session_logger.info(f"User {session.user_id} logged out")
    return {"success": True}
