from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from jose import JWTError
from backup_server.core.security import resolve_api_key, verify_token

# Both schemes are optional individually; one of them must succeed
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)
api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)

async def get_current_client(
    request: Request,
    api_key: Optional[str] = Depends(api_key_scheme),
    token: Optional[str] = Depends(oauth2_scheme),
) -> str:
    """
    Dependency to authenticate the calling backup agent and return its client id.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings = request.app.state.settings

    if api_key:
        client_id = resolve_api_key(api_key, settings)
        if client_id is None:
            raise credentials_exception
        return client_id

    if not token:
        raise credentials_exception

    try:
        payload = verify_token(token, settings)
        client_id: str = payload.get("sub")
        if client_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    return client_id
