from typing import Optional

from fastapi import Request, Response

from passkeyrp.core.config import settings
from passkeyrp.core.database import Session as DBSession
from passkeyrp.core.encryption import encryption_utils


async def get_remote_address(request: Request, default_ip: str = "127.0.0.1", use_cf_connecting_ip: bool = True,
                             other_ip_headers: list = None):
    """
    Retrieves the remote address of the client making the request. By default, it
    returns the IP address contained in the `CF-Connecting-IP` header if present,
    falling back to the client's host IP and finally to `default_ip`.

    :param other_ip_headers: Additional headers to check for the remote IP address ex ["X-Forwarded-For"].
    :param use_cf_connecting_ip: Whether to use the `CF-Connecting-IP` header if present.
    :param default_ip: Default IP address to use if the client's host IP cannot be determined.
    :param request: The incoming HTTP request.
    :return: The remote IP address as a string.
    """
    if use_cf_connecting_ip:
        if request.headers.get("CF-Connecting-IP"):
            return request.headers.get("CF-Connecting-IP")
    if other_ip_headers:
        for header in other_ip_headers:
            if request.headers.get(header):
                return request.headers.get(header)
    if not request.client or not request.client.host:
        return default_ip
    return request.client.host


def encode_session_cookie(token: str, session: DBSession) -> str:
    """Wraps the opaque session token in a signed JWT that expires with the session."""
    return encryption_utils.create_jwt_token({"token": token}, expires_at=session.expires_at)


def decode_session_cookie(cookie_value: Optional[str]) -> Optional[str]:
    """Returns the opaque session token from a cookie value, or None if it is not ours."""
    if not cookie_value:
        return None
    payload = encryption_utils.decode_jwt_token(cookie_value)
    if not payload:
        return None
    token = payload.get("token")
    return token if isinstance(token, str) else None


def set_session_cookie(response: Response, token: str, session: DBSession) -> None:
    response.set_cookie(
        key=settings.SESSION_TOKEN_NAME,
        value=encode_session_cookie(token, session),
        samesite=settings.SESSION_SAME_SITE,
        secure=settings.SESSION_SECURE,
        httponly=True,
        max_age=settings.SESSION_LIFETIME_SECONDS,
        domain=settings.SESSION_COOKIE_DOMAIN,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        settings.SESSION_TOKEN_NAME,
        samesite=settings.SESSION_SAME_SITE,
        secure=settings.SESSION_SECURE,
        httponly=True,
        domain=settings.SESSION_COOKIE_DOMAIN,
    )


def response_sets_session_cookie(response: Response) -> bool:
    prefix = f"{settings.SESSION_TOKEN_NAME}="
    return any(header.startswith(prefix) for header in response.headers.getlist("set-cookie"))
