"""
passkeyrp
=========

An async-first passkey (WebAuthn) relying-party engine for Python, with first-class FastAPI support.

- Challenge registry with single-use, short-lived challenges consumed atomically in the database.
- From-scratch assertion and attestation verification (CBOR authenticator data, COSE keys) on top of `cryptography`.
- Clone detection through signature counters, persisted with compare-and-swap updates.
- Server-side sessions keyed by a hashed opaque token, delivered in a signed, httponly cookie.
- SQL-first design with PostgreSQL and SQLite support.
"""

__version__ = "0.1.0"
__description__ = "A passkey (WebAuthn) relying-party engine with FastAPI integration"

from fastapi import FastAPI

from .core.config import settings, init_settings


def init_app(app: FastAPI, session_middleware_kwargs=None):
    """
    Initializes passkeyrp on a FastAPI app: session cookie middleware plus the WebAuthn and session routers.
    :param session_middleware_kwargs: {raise_errors: bool = False, other_ip_headers: list = None}
    :param app:
    """
    from passkeyrp.routers import webauthn_router, session_router
    from passkeyrp.middlewares import SessionCookieMiddleware

    app.add_middleware(SessionCookieMiddleware, **(session_middleware_kwargs or {}))
    app.include_router(webauthn_router)
    app.include_router(session_router)


__all__ = [
    "settings",
    "init_settings",
    "init_app"
]
