"""
Marketplace OAuth routes.

Handles:
- GET /api/auth/avito/authorize/{tenant_id}: Redirect the operator to the
  marketplace consent page
- GET /api/auth/avito/callback: Exchange the code and store tokens
- POST /api/auth/avito/refresh/{tenant_id}: Manual token refresh

The callback NEVER returns a raw error to the browser; failures redirect to
the frontend with a human-readable message. The OAuth state carries the
account id so the callback knows which account to attach tokens to.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from src.api.schemas.marketplace_account import TokenRefreshResponse
from src.integrations.avito.oauth import build_authorization_url, decode_state, encode_state
from src.platform.errors import AppError, NotFoundError
from src.runtime import MarketplaceRuntime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth/avito", tags=["avito-oauth"])


def _error_redirect(frontend_url: str, message: str) -> RedirectResponse:
    query = urlencode({"oauth": "error", "message": message})
    return RedirectResponse(
        url=f"{frontend_url}/avito?{query}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/authorize/{tenant_id}")
async def authorize(
    tenant_id: int,
    runtime: MarketplaceRuntime = Depends(get_runtime),
):
    """
    Start the authorization_code flow for one account.

    Returns:
        302 to the marketplace consent page
    """
    settings = runtime.settings
    settings.require_oauth()

    if await runtime.repository.get(tenant_id) is None:
        raise NotFoundError("Marketplace account", str(tenant_id))

    url = build_authorization_url(
        client_id=settings.oauth_client_id,
        redirect_uri=settings.oauth_redirect_uri,
        scopes=settings.oauth_scopes,
        state=encode_state(tenant_id),
        oauth_url=settings.oauth_url,
    )
    logger.info("Redirecting to marketplace OAuth", extra={"tenant_id": tenant_id})
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/callback")
async def callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    runtime: MarketplaceRuntime = Depends(get_runtime),
):
    """
    Complete the authorization_code flow.

    Returns:
        302 to the account edit page on success, or to the account list
        with oauth=error and a message on any failure
    """
    frontend_url = runtime.settings.frontend_url

    if error:
        logger.warning("Marketplace OAuth denied", extra={"oauth_error": error})
        return _error_redirect(frontend_url, f"Authorization was denied: {error}")
    if not code:
        return _error_redirect(frontend_url, "Authorization code is missing")

    try:
        tenant_id = decode_state(state)
        await runtime.coordinator.exchange_authorization_code(tenant_id, code)
    except AppError as e:
        logger.warning(
            "Marketplace OAuth callback failed",
            extra={"error_code": e.code, "status_code": e.status_code}
        )
        return _error_redirect(frontend_url, e.message)
    except Exception:
        logger.exception("Unexpected error in marketplace OAuth callback")
        return _error_redirect(frontend_url, "Unexpected error while connecting the account")

    logger.info("Marketplace OAuth connected", extra={"tenant_id": tenant_id})
    return RedirectResponse(
        url=f"{frontend_url}/avito/edit/{tenant_id}?oauth=success",
        status_code=status.HTTP_302_FOUND,
    )


@router.post("/refresh/{tenant_id}", response_model=TokenRefreshResponse)
async def refresh(
    tenant_id: int,
    runtime: MarketplaceRuntime = Depends(get_runtime),
):
    """Force a token refresh for an OAuth-connected account."""
    token_set = await runtime.coordinator.refresh_tokens(tenant_id)
    return TokenRefreshResponse(
        success=True,
        message="Token refreshed successfully",
        expires_in=token_set.expires_in,
    )
