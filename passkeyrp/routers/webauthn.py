import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, status, Body
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from passkeyrp.core.database import User
from passkeyrp.core.exceptions import CeremonyError, RateLimitError
from passkeyrp.helpers import get_remote_address, set_session_cookie
from passkeyrp.integrations import passkey_service, get_current_user_optional

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webauthn", tags=["WebAuthn"])

REGISTRATION_FAILED = "Registration verification failed"
AUTHENTICATION_FAILED = "Authentication verification failed"


# --- Pydantic Models ---
class RegistrationOptionsRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=1, max_length=80)
    displayName: Optional[str] = Field(None, max_length=120)


class AuthenticationOptionsRequest(BaseModel):
    username: Optional[str] = Field(None, max_length=80)


class CredentialRequest(BaseModel):
    credential: Dict[str, Any]


@router.post("/registration/options", summary="Generate options for passkey registration")
async def registration_options(payload: Optional[RegistrationOptionsRequest] = Body(None),
                               user: Optional[User] = Depends(get_current_user_optional)):
    """
    Issues a registration challenge. Signed-in users add a passkey to their
    own account; anyone else creates a new account with the handle.
    """
    payload = payload or RegistrationOptionsRequest()
    return await passkey_service.registration.begin(
        user_handle=payload.username, display_name=payload.displayName, current_user=user,
    )


@router.post("/registration/verify", summary="Verify a passkey registration")
async def registration_verify(payload: CredentialRequest, request: Request,
                              user: Optional[User] = Depends(get_current_user_optional)):
    try:
        result = await passkey_service.registration.complete(
            payload.credential, current_user=user, ip_address=await get_remote_address(request),
        )
    except CeremonyError as e:
        logger.info(f"Registration verify returned 400 ({e.kind}).")
        return JSONResponse({"success": False, "error": REGISTRATION_FAILED}, status_code=status.HTTP_400_BAD_REQUEST)

    response = JSONResponse({"success": True, "user_id": result.user.id})
    set_session_cookie(response, result.token, result.session)
    return response


@router.post("/authentication/options", summary="Generate options for passkey login")
async def authentication_options(payload: Optional[AuthenticationOptionsRequest] = Body(None)):
    """
    Issues an authentication challenge. Omit the username for discoverable
    credentials (the browser picks the account).
    """
    username = payload.username if payload else None
    return await passkey_service.authentication.begin(user_handle=username)


@router.post("/authentication/verify", summary="Verify a passkey login")
async def authentication_verify(payload: CredentialRequest, request: Request):
    try:
        result = await passkey_service.authentication.complete(
            payload.credential, ip_address=await get_remote_address(request),
        )
    except RateLimitError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=status.HTTP_429_TOO_MANY_REQUESTS)
    except CeremonyError as e:
        logger.info(f"Authentication verify returned 401 ({e.kind}).")
        return JSONResponse({"success": False, "error": AUTHENTICATION_FAILED},
                            status_code=status.HTTP_401_UNAUTHORIZED)

    response = JSONResponse({"success": True, "user_id": result.user.id})
    set_session_cookie(response, result.token, result.session)
    return response
