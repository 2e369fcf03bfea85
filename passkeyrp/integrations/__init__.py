from .fastapi_integration import passkey_service, get_current_user, get_current_user_optional, get_user_ip

__all__ = ["passkey_service", "get_current_user", "get_current_user_optional", "get_user_ip"]
