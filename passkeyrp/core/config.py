import logging
import os
from typing import List, Optional, Any, Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_settings_instance: Optional["Settings"] = None

dont_use_env = os.getenv("PASSKEYRP_NO_ENV", "false").lower() in ("true", "1", "t")

DEVELOPMENT_RP_ID = "localhost"
DEVELOPMENT_ORIGIN = "http://localhost:3000"


class Settings(BaseSettings):
    """
    Manages all relying-party configuration using Pydantic.
    Loads settings from environment variables; ENVIRONMENT picks the
    development or production defaults for the relying-party id and origins.
    """
    # Application settings
    APP_NAME: str = "Passkey ToDo Board"
    ENVIRONMENT: Literal["development", "production"] = "development"
    ALGORITHM: str = "HS256"  # JWT algorithm for the session cookie

    # Security settings
    JWT_SECRET_KEY: SecretStr = SecretStr("dev-secret-key-change-in-production")

    # Database settings
    DEFAULT_DATABASE_URI: str = "sqlite+aiosqlite:///./passkeyrp_dev.db"  # PROVIDE ASYNC URI
    AUTO_CREATE_DATABASE: bool = True
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_POOL_RECYCLE: int = 1800
    DATABASE_POOL_PRE_PING: bool = True

    # Webauthn settings
    WEBAUTHN_RP_ID: Optional[str] = None  # The host of your site, defaults to localhost in development
    WEBAUTHN_RP_NAME: str = "Passkey ToDo Board"
    WEBAUTHN_ORIGINS: List[str] = []  # scheme + host + port if non-default, exact match
    WEBAUTHN_ALGORITHMS: List[int] = [-7, -37, -257]  # ES256, PS256, RS256 in order of preference
    WEBAUTHN_USER_VERIFICATION: Literal["required", "preferred", "discouraged"] = "required"
    WEBAUTHN_RESIDENT_KEY: Literal["required", "preferred", "discouraged"] = "preferred"
    WEBAUTHN_ATTESTATION: Literal["none", "indirect", "direct"] = "none"
    WEBAUTHN_TIMEOUT_MS: int = 120000
    CHALLENGE_TTL_SECONDS: int = 300

    # Session settings
    SESSION_LIFETIME_SECONDS: int = 86400  # absolute, counted from authenticated_at
    SESSION_TOKEN_NAME: str = "passkeyrp_session"
    SESSION_SAME_SITE: Literal["lax", "strict", "none"] = "lax"
    SESSION_SECURE: Optional[bool] = None  # follows ENVIRONMENT when unset
    SESSION_COOKIE_DOMAIN: Optional[str] = None

    # Rate limiting for failed passkey logins
    MAX_LOGIN_ATTEMPTS_PER_IP: int = 10
    MAX_LOGIN_ATTEMPTS_PER_USER: int = 5
    LOGIN_RATE_LIMIT_WINDOW_SECONDS: int = 900

    model_config = SettingsConfigDict(env_file=None if dont_use_env else os.getenv("ENV_FILE_NAME", ".env"),
                                      env_file_encoding='utf-8', extra='ignore')

    @model_validator(mode="after")
    def apply_environment_defaults(self) -> "Settings":
        production = self.ENVIRONMENT == "production"
        if not self.WEBAUTHN_RP_ID:
            if production:
                raise ValueError("WEBAUTHN_RP_ID must be set in production.")
            self.WEBAUTHN_RP_ID = DEVELOPMENT_RP_ID
        if not self.WEBAUTHN_ORIGINS:
            if production:
                raise ValueError("WEBAUTHN_ORIGINS must be set in production.")
            self.WEBAUTHN_ORIGINS = [DEVELOPMENT_ORIGIN]
        self.WEBAUTHN_ORIGINS = [origin.rstrip("/") for origin in self.WEBAUTHN_ORIGINS]
        if self.SESSION_SECURE is None:
            self.SESSION_SECURE = production
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


def init_settings(**kwargs: Any) -> "Settings":
    """
    Initializes or re-initializes the global settings singleton. Call this
    explicitly at application start-up, or in tests, to pin configuration.
    """
    global _settings_instance, dont_use_env
    if _settings_instance is not None:
        logger.warning("Settings have already been initialized. Re-initializing.")
    dont_use_env = kwargs.pop("dont_use_env", True)
    _settings_instance = Settings(**kwargs)
    return _settings_instance


def get_settings() -> "Settings":
    """
    Retrieves the global settings singleton, auto-initializing it from the
    environment on first access unless `PASSKEYRP_NO_ENV` is set.
    """
    global _settings_instance
    if _settings_instance is None:
        if dont_use_env:
            raise RuntimeError(
                "PASSKEYRP_NO_ENV is set. Settings must be initialized manually "
                "by calling `init_settings()` at application startup."
            )
        logger.debug("Auto-initializing settings on first access.")
        _settings_instance = init_settings(dont_use_env=False)
    return _settings_instance


# Lets other modules do `from passkeyrp.core.config import settings` and read
# attributes before anything has called init_settings().
class _SettingsProxy:
    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)


settings = _SettingsProxy()
