"""OAuth endpoints for third-party services.

- /oauth/login - set the state cookie and redirect to the consent page
- /oauth/callback - check the state, exchange the code, store the token
- /oauth/status - report whether a token is stored
- /oauth/revoke - forget the stored token
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from shared.errors import GatewayError
from shared.logging import get_logger
from auth.oauth import OAuthTokenBroker

logger = get_logger(__name__)

router = APIRouter(prefix="/oauth", tags=["OAuth"])


def get_oauth_broker(request: Request) -> OAuthTokenBroker:
    """Dependency resolving the broker installed at startup."""
    broker = getattr(request.app.state, "oauth_broker", None)
    if broker is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="OAuth is not configured"
        )
    return broker


@router.get("/login")
async def login(broker: OAuthTokenBroker = Depends(get_oauth_broker)):
    """Redirect to the provider's consent page."""
    url, state = broker.begin()

    response = RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    response.set_cookie(
        key=broker.cookie_name,
        value=state,
        path="/",
        secure=True,
        httponly=True,
    )
    return response


@router.get("/callback")
async def callback(
    request: Request,
    state: Optional[str] = Query(default=None),
    code: Optional[str] = Query(default=None),
    broker: OAuthTokenBroker = Depends(get_oauth_broker)
):
    """Finish the flow; the state cookie is cleared only on success."""
    try:
        await broker.complete(state, request.cookies.get(broker.cookie_name), code)
    except GatewayError as e:
        logger.warning("OAuth callback rejected", step=e.step, error=str(e))
        return JSONResponse(status_code=e.status_code, content={"error": e.public_message})

    response = PlainTextResponse("Authentication successful")
    response.delete_cookie(
        key=broker.cookie_name,
        path="/",
        secure=True,
        httponly=True,
    )
    return response


@router.get("/status")
async def oauth_status(broker: OAuthTokenBroker = Depends(get_oauth_broker)):
    return {"authenticated": await broker.has_token()}


@router.post("/revoke")
async def revoke(broker: OAuthTokenBroker = Depends(get_oauth_broker)):
    await broker.revoke()
    return {"status": "revoked"}
