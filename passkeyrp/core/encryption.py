import base64
import binascii
import hashlib
import hmac
import logging
import re
import secrets
import time
from typing import Optional

from jose import jwt, JWTError

from passkeyrp.core.config import settings

logger = logging.getLogger(__name__)

_BASE64URL_ALPHABET = re.compile(r"[A-Za-z0-9_-]*")


class EncryptionUtils:
    """
    Helpers for random material, token hashing, base64url transport encoding
    and the signed session cookie.
    """

    @staticmethod
    def gen_random_bytes(length: int = 32) -> bytes:
        """Returns `length` bytes from the OS CSPRNG."""
        return secrets.token_bytes(length)

    @staticmethod
    def gen_token(length: int = 32) -> str:
        """Generates an opaque, URL-safe, unguessable token."""
        return secrets.token_urlsafe(length)

    @staticmethod
    def hash_token(token: str) -> str:
        """SHA-256 hex digest of a token; only the digest is ever stored."""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    @staticmethod
    def constant_time_equals(a: bytes, b: bytes) -> bool:
        return hmac.compare_digest(a, b)

    def create_jwt_token(self, data: dict, expires_at: Optional[float] = None) -> str:
        """
        Creates a signed JWT carrying `data`.

        Args:
            data (dict): The payload to be encoded in the JWT.
            expires_at (Optional[float]): Absolute expiry as a unix timestamp.
                Defaults to now + SESSION_LIFETIME_SECONDS.

        Returns:
            str: The signed JWT token string.
        """
        to_encode = data.copy()
        to_encode["exp"] = int(expires_at if expires_at is not None else time.time() + settings.SESSION_LIFETIME_SECONDS)
        return jwt.encode(to_encode, settings.JWT_SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)

    def decode_jwt_token(self, token: str) -> Optional[dict]:
        """
        Decodes a JWT and returns its payload, or None if the signature or
        expiry check fails.
        """
        try:
            return jwt.decode(token, settings.JWT_SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
        except JWTError as e:
            logger.debug(f"JWT decoding failed: {e}")
            return None

    @staticmethod
    def base64url_encode(data: bytes) -> str:
        """
        Encodes bytes to a base64url string without padding.
        """
        return base64.urlsafe_b64encode(data).rstrip(b'=').decode('utf-8')

    @staticmethod
    def base64url_decode(data: str) -> bytes:
        """
        Decodes a base64url string without padding to bytes.
        Raises ValueError on anything that is not base64url text.
        """
        if not isinstance(data, str):
            raise ValueError("Expected a base64url string.")
        if not _BASE64URL_ALPHABET.fullmatch(data):
            raise ValueError("Invalid base64url data: characters outside the base64url alphabet.")
        padding = '=' * (-len(data) % 4)
        try:
            return base64.urlsafe_b64decode((data + padding).encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError(f"Invalid base64url data: {e}")


encryption_utils = EncryptionUtils()
