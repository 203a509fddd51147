"""
Google sign-in (OAuth 2.0 authorization code flow).

The routes are always mounted; without ``GOOGLE_CLIENT_ID`` and
``GOOGLE_CLIENT_SECRET`` they answer 500 with a ``ConfigurationError``.
Google accounts are stored as users whose username is ``google:<subject id>``
and whose password is null.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

import requests
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from meditrack.config import Settings
from meditrack.dependencies import StoreContext, get_context, get_storage
from meditrack.errors import ConfigurationError
from meditrack.hybrid import HybridStorage
from meditrack.routes import GOOGLE_USERNAME_PREFIX, start_session

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
STATE_COOKIE = "oauth_state"
STATE_TTL_SECONDS = 600
REQUEST_TIMEOUT_SECONDS = 10

router = APIRouter(prefix="/auth/google", tags=["OAuth"])


def _require_configured(settings: Settings) -> None:
    if not settings.google_oauth_enabled:
        raise ConfigurationError(
            "Google OAuth is not configured; set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET"
        )


def _redirect_uri(request: Request, settings: Settings) -> str:
    if settings.google_callback_url.startswith(("http://", "https://")):
        return settings.google_callback_url
    return str(request.base_url).rstrip("/") + settings.google_callback_url


def fetch_google_profile(
    code: str, redirect_uri: str, client_id: str, client_secret: str
) -> dict:
    """Exchange an authorization code for tokens and return the userinfo payload."""
    token_resp = requests.post(
        GOOGLE_TOKEN_URL,
        data={
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    token_resp.raise_for_status()
    access_token = token_resp.json()["access_token"]

    userinfo_resp = requests.get(
        GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    userinfo_resp.raise_for_status()
    return userinfo_resp.json()


def _login_failed() -> RedirectResponse:
    response = RedirectResponse("/login", status_code=302)
    response.delete_cookie(STATE_COOKIE)
    return response


@router.get("")
async def google_login(request: Request, context: StoreContext = Depends(get_context)):
    settings = context.settings
    _require_configured(settings)

    state = secrets.token_urlsafe(16)
    query = urlencode(
        {
            "client_id": settings.google_client_id,
            "redirect_uri": _redirect_uri(request, settings),
            "response_type": "code",
            "scope": "openid profile",
            "state": state,
        }
    )
    response = RedirectResponse(f"{GOOGLE_AUTH_URL}?{query}", status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=STATE_TTL_SECONDS,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )
    return response


@router.get("/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    context: StoreContext = Depends(get_context),
    storage: HybridStorage = Depends(get_storage),
):
    settings = context.settings
    _require_configured(settings)

    expected_state = request.cookies.get(STATE_COOKIE)
    if error or not code or not state or state != expected_state:
        logger.warning("Rejected Google callback (error=%s)", error)
        return _login_failed()

    try:
        profile = await run_in_threadpool(
            fetch_google_profile,
            code,
            _redirect_uri(request, settings),
            settings.google_client_id,
            settings.google_client_secret,
        )
    except (requests.RequestException, KeyError, ValueError) as exc:
        logger.error("Google token exchange failed: %s", exc)
        return _login_failed()

    subject = profile.get("sub")
    if not subject:
        logger.error("Google userinfo response had no subject")
        return _login_failed()

    username = f"{GOOGLE_USERNAME_PREFIX}{subject}"
    user = await storage.get_user_by_username(username)
    if not user:
        user = await storage.create_user(username, None)
        logger.info("Created Google user %s", user.id)

    response = RedirectResponse("/", status_code=302)
    response.delete_cookie(STATE_COOKIE)
    await start_session(response, context, user.id)
    return response
