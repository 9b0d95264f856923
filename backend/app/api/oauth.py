"""OAuth API routes for connecting, refreshing and disconnecting social platforms"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.core.config import LOGIN_URL
from app.core.errors import FailureReason, OAuthFlowError, ProviderConfigurationError
from app.core.security import get_current_session, require_session
from app.db.session import get_db
from app.schemas.session import AppSession
from app.services.oauth_service import OAuthFlowController, build_error_redirect, sanitize_return_to

# Loggers
logger = logging.getLogger(__name__)
oauth_logger = logging.getLogger("oauth")

router = APIRouter(prefix="/api/auth", tags=["oauth"])


def get_oauth_controller() -> OAuthFlowController:
    """Dependency: flow controller bound to the shared session service"""
    return OAuthFlowController()


def _redirect(url: str, controller: OAuthFlowController, session: AppSession) -> RedirectResponse:
    response = RedirectResponse(url=url, status_code=302)
    controller.sessions.write(response, session)
    return response


# ============================================================================
# TWITTER OAUTH 1.0a (media upload credentials)
# ============================================================================

@router.get("/twitter/oauth1/login")
async def twitter_oauth1_login(
    returnTo: Optional[str] = Query(None),
    augment: Optional[bool] = Query(None),
    session: AppSession = Depends(get_current_session),
    controller: OAuthFlowController = Depends(get_oauth_controller),
    db: Session = Depends(get_db)
):
    """Start the OAuth 1.0a flow and redirect straight to Twitter

    The credentials are attached to an existing Twitter connection unless
    ``augment=false`` asks for a standalone link.
    """
    if not session.is_authenticated:
        return_path = sanitize_return_to(returnTo)
        return RedirectResponse(url=f"{LOGIN_URL}?{urlencode({'returnTo': return_path})}", status_code=302)

    try:
        start = await controller.begin_oauth1(session, db, return_to=returnTo, augment=augment)
    except OAuthFlowError as e:
        return RedirectResponse(url=build_error_redirect(e.reason, "twitter"), status_code=302)
    except ProviderConfigurationError as e:
        oauth_logger.error(f"Cannot start Twitter OAuth 1.0a flow: {e.message}")
        return RedirectResponse(url=build_error_redirect(FailureReason.OAUTH_FAILED, "twitter"), status_code=302)

    return _redirect(start.authorize_url, controller, start.session)


@router.get("/twitter/oauth1/callback")
async def twitter_oauth1_callback(
    request: Request,
    session: AppSession = Depends(get_current_session),
    controller: OAuthFlowController = Depends(get_oauth_controller),
    db: Session = Depends(get_db)
):
    """Handle the OAuth 1.0a callback, always redirects back to the app"""
    outcome = await controller.complete_oauth1(session, dict(request.query_params), db)
    return _redirect(outcome.redirect_url, controller, outcome.session)


# ============================================================================
# STATUS / REFRESH
# ============================================================================

@router.get("/oauth/status")
def oauth_status(
    session: AppSession = Depends(require_session),
    controller: OAuthFlowController = Depends(get_oauth_controller)
):
    """Connected platforms with their token expiry state"""
    return {"platforms": controller.connection_status(session)}


@router.post("/oauth/refresh")
async def oauth_refresh(
    response: Response,
    session: AppSession = Depends(require_session),
    controller: OAuthFlowController = Depends(get_oauth_controller),
    db: Session = Depends(get_db)
):
    """Refresh provider tokens that are about to expire"""
    session, results = await controller.refresh_expiring_tokens(session, db)
    controller.sessions.write(response, session)
    return {"results": results}


# ============================================================================
# OAUTH 2.0 PROVIDERS (facebook, instagram, twitter, tiktok, amazon)
# ============================================================================

def _start_login(provider: str, returnTo: Optional[str], response: Response,
                 session: AppSession, controller: OAuthFlowController):
    start = controller.begin(session, provider, return_to=returnTo)
    controller.sessions.write(response, start.session)
    return {"authUrl": start.authorize_url}


@router.post("/{provider}/login")
def oauth_login(
    provider: str,
    response: Response,
    returnTo: Optional[str] = Query(None),
    session: AppSession = Depends(get_current_session),
    controller: OAuthFlowController = Depends(get_oauth_controller)
):
    """Start an OAuth 2.0 connect flow, returns the provider authorize URL"""
    return _start_login(provider, returnTo, response, session, controller)


@router.get("/{provider}/login")
def oauth_login_get(
    provider: str,
    response: Response,
    returnTo: Optional[str] = Query(None),
    session: AppSession = Depends(get_current_session),
    controller: OAuthFlowController = Depends(get_oauth_controller)
):
    """GET variant of the connect endpoint"""
    return _start_login(provider, returnTo, response, session, controller)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    session: AppSession = Depends(get_current_session),
    controller: OAuthFlowController = Depends(get_oauth_controller),
    db: Session = Depends(get_db)
):
    """Handle an OAuth 2.0 callback, always redirects back to the app"""
    try:
        outcome = await controller.complete(session, provider, dict(request.query_params), db)
    except OAuthFlowError as e:
        oauth_logger.warning(f"Callback for {provider} rejected: {e.message}")
        return RedirectResponse(url=build_error_redirect(e.reason, provider), status_code=302)
    return _redirect(outcome.redirect_url, controller, outcome.session)


@router.post("/{provider}/disconnect")
async def oauth_disconnect(
    provider: str,
    response: Response,
    session: AppSession = Depends(require_session),
    controller: OAuthFlowController = Depends(get_oauth_controller),
    db: Session = Depends(get_db)
):
    """Disconnect a platform; succeeds even when it was not connected"""
    session = await controller.disconnect(session, provider, db)
    controller.sessions.write(response, session)
    return {"success": True}
