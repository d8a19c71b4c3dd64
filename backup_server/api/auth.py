from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from backup_server.core.security import create_access_token, verify_client_secret

router = APIRouter()

@router.post("/token")
async def login_for_access_token(request: Request, form_data: OAuth2PasswordRequestForm = Depends()):
    """
    Endpoint to authenticate backup agents and provide access tokens.
    """
    settings = request.app.state.settings

    # Verify client credentials
    if not verify_client_secret(form_data.username, form_data.password, settings):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect client ID or secret",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Create access token with client ID as subject
    access_token_expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": form_data.username},
        expires_delta=access_token_expires,
        settings=settings,
    )

    return {"access_token": access_token, "token_type": "bearer"}
