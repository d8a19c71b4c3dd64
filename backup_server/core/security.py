import secrets
from datetime import datetime, timedelta
from typing import Optional
from jose import jwt
from backup_server.core.config import Settings, settings as default_settings

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None,
                        settings: Settings = default_settings) -> str:
    """
    Create a JWT access token with an optional expiration time.
    """
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def verify_token(token: str, settings: Settings = default_settings) -> dict:
    """
    Decode and verify a JWT token, returning the payload if valid.
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])

def verify_client_secret(client_id: str, secret: str, settings: Settings = default_settings) -> bool:
    expected = settings.CLIENT_CREDENTIALS.get(client_id)
    if expected is None:
        return False
    return secrets.compare_digest(expected.encode(), secret.encode())

def resolve_api_key(api_key: str, settings: Settings = default_settings) -> Optional[str]:
    """
    Return the client id registered for an API key, if any.
    """
    for known_key, client_id in settings.CLIENT_API_KEYS.items():
        if secrets.compare_digest(known_key.encode(), api_key.encode()):
            return client_id
    return None
