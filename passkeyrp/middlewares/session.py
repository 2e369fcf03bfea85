"""
Session middleware for passkeyrp (FastAPI).

Resolves the session cookie to a user on every request. The cookie is a signed
JWT around an opaque token; the token is validated against the sessions table
each time, so logout and account deletion take effect immediately.
"""

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from passkeyrp.core.config import settings
from passkeyrp.core.exceptions import SessionInvalidError, SessionExpiredError
from passkeyrp.helpers import (
    get_remote_address, decode_session_cookie, clear_session_cookie, response_sets_session_cookie,
)

logger = logging.getLogger(__name__)


class SessionCookieMiddleware(BaseHTTPMiddleware):
    """
    - Reads the session cookie and unwraps the opaque token.
    - Validates the token with the session manager.
    - Injects request.state.user_id, request.state.user_object and request.state.session_token.
    - Deletes the cookie when it no longer maps to a live session.
    """

    def __init__(self, app, raise_errors: bool = False, other_ip_headers: list = None):
        super().__init__(app)
        self.raise_errors = raise_errors
        self.other_ip_headers = other_ip_headers

    async def dispatch(self, request: Request, call_next):
        from passkeyrp.integrations import passkey_service

        request.state.user_id = None
        request.state.user_object = None
        request.state.session_token = None
        request.state.user_ip_address = await get_remote_address(request, other_ip_headers=self.other_ip_headers)

        cookie_value = request.cookies.get(settings.SESSION_TOKEN_NAME)
        stale_cookie = False
        if cookie_value:
            token = decode_session_cookie(cookie_value)
            if token is None:
                stale_cookie = True
            else:
                try:
                    user = await passkey_service.sessions.validate(token)
                    request.state.user_id = user.id
                    request.state.user_object = user
                    request.state.session_token = token
                except (SessionInvalidError, SessionExpiredError) as e:
                    logger.debug(f"Dropping session cookie: {e}")
                    stale_cookie = True
                except Exception as e:
                    if self.raise_errors:
                        raise
                    logger.error(f"Error in session middleware: {e}", exc_info=True)

        response = await call_next(request)
        if stale_cookie and not response_sets_session_cookie(response):
            clear_session_cookie(response)
        return response
