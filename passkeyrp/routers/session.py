from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from passkeyrp.core.database import User
from passkeyrp.helpers import clear_session_cookie, get_remote_address
from passkeyrp.integrations import passkey_service, get_current_user, get_current_user_optional

router = APIRouter(prefix="/api", tags=["Session"])


@router.post("/logout", summary="End the current session")
async def logout(request: Request):
    token = getattr(request.state, "session_token", None)
    if token:
        await passkey_service.logout(token, ip_address=await get_remote_address(request))
    response = JSONResponse({"success": True})
    clear_session_cookie(response)
    return response


@router.get("/session", summary="Describe the current session")
async def current_session(user: Optional[User] = Depends(get_current_user_optional)):
    if user is None:
        return {"authenticated": False, "user_id": None, "username": None}
    return {"authenticated": True, "user_id": user.id, "username": user.username}


@router.delete("/account", summary="Delete the current account")
async def delete_account(request: Request, user: User = Depends(get_current_user)):
    """Deletes the user with all of their credentials and sessions."""
    await passkey_service.delete_account(user.id, ip_address=await get_remote_address(request))
    response = JSONResponse({"success": True})
    clear_session_cookie(response)
    return response
