from .session import SessionCookieMiddleware

__all__ = ["SessionCookieMiddleware"]
