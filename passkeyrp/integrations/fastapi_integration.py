from typing import Optional

from fastapi import HTTPException, status, Request

from passkeyrp.core.database import User, db_manager
from passkeyrp.manager.asynchronous import PasskeyService

# The primary asynchronous service used by FastAPI dependencies.
passkey_service = PasskeyService(db_manager)


async def get_current_user(request: Request) -> User:
    """
    FastAPI dependency that returns the user behind the session cookie, as
    resolved by SessionCookieMiddleware. Raises 401 when there is none.
    """
    user = getattr(request.state, "user_object", None)
    if user is not None:
        return user
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = await passkey_service.users.get_by_id(user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found for this session")
    request.state.user_object = user
    return user


async def get_current_user_optional(request: Request) -> Optional[User]:
    """
    Does the exact same thing as get_current_user but returns None instead of raising when not authenticated.
    """
    try:
        return await get_current_user(request)
    except HTTPException as e:
        if e.status_code == status.HTTP_401_UNAUTHORIZED:
            return None
        raise


def get_user_ip(request: Request) -> str:
    """Set by SessionCookieMiddleware; only valid when the middleware is installed."""
    return request.state.user_ip_address
