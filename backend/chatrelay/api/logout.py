"""Session logout endpoint."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from chatrelay.auth.session import SessionAuthenticator
from chatrelay.dependencies import get_authenticator

router = APIRouter()


@router.post("")
async def logout(
    request: Request,
    auth: SessionAuthenticator = Depends(get_authenticator),
) -> JSONResponse:
    """Clear the session cookie."""
    response = JSONResponse({"success": True})
    response.delete_cookie(
        auth.cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return response
