"""
Integrations Router — Xero accounting connection management.
"""

from datetime import timedelta

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from api.deps import require_admin
from core.config import get_settings
from core.errors import AuthError
from core.security import create_access_token, decode_access_token
from integrations.xero import XeroService, get_xero_service

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])
settings = get_settings()

OAUTH_STATE_PURPOSE = "xero_oauth"


# ─── Schemas ────────────────────────────────────────────────────────────────


class ConnectResponse(BaseModel):
    auth_url: str


class XeroStatusResponse(BaseModel):
    connected: bool
    organisation: str | None = None
    tenant_id: str | None = None
    message: str | None = None
    error: str | None = None
    auth_url: str | None = None


# ─── Xero OAuth ─────────────────────────────────────────────────────────────


@router.get("/xero/connect", response_model=ConnectResponse)
async def xero_connect(
    user: dict = Depends(require_admin),
    xero: XeroService = Depends(get_xero_service),
):
    """Consent URL for connecting the Xero organisation."""
    state = create_access_token({"purpose": OAUTH_STATE_PURPOSE, "sub": user.get("sub")}, timedelta(minutes=15))
    return ConnectResponse(auth_url=xero.consent_url(state=state))


@router.get("/xero/callback")
async def xero_callback(
    code: str,
    state: str,
    xero: XeroService = Depends(get_xero_service),
):
    """Handle Xero OAuth callback — exchange code for tokens, then back to the app."""
    claims = decode_access_token(state)
    if not claims or claims.get("purpose") != OAUTH_STATE_PURPOSE:
        raise AuthError("Invalid OAuth state")
    await xero.exchange_code(code)
    return RedirectResponse(url=f"{settings.frontend_url.rstrip('/')}/admin/settings?xero=connected")


@router.get("/xero/status", response_model=XeroStatusResponse)
async def xero_status(
    user: dict = Depends(require_admin),
    xero: XeroService = Depends(get_xero_service),
):
    return await xero.status()


@router.post("/xero/disconnect", response_model=XeroStatusResponse)
async def xero_disconnect(
    user: dict = Depends(require_admin),
    xero: XeroService = Depends(get_xero_service),
):
    await xero.disconnect()
    return XeroStatusResponse(connected=False, message="Disconnected from Xero")
