from typing import Annotated, Optional
from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm

from timeflow_server.core.settings import settings
from timeflow_server.auth import (
    CurrentUserDep,
    DBDep,
    EmailAlreadyRegisteredError,
    authenticate_user,
    create_token_for_user,
    create_user,
)
from timeflow_server import schemas

router = APIRouter()

INVALID_LOGIN_DETAIL = "Invalid email or password"

def invalid_login() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=INVALID_LOGIN_DETAIL,
        headers={"WWW-Authenticate": "Bearer"},
    )

@router.post("/register", response_model=schemas.AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(db: DBDep, user_in: Optional[schemas.UserCreate] = Body(None)):
    """Create an account (with its default activity) and log it in."""
    if user_in is None or not user_in.email or not user_in.password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email and password are required")
    if len(user_in.password) < settings.MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at least {settings.MIN_PASSWORD_LENGTH} characters",
        )
    try:
        user = await create_user(db, user_in.email, user_in.password, name=user_in.name)
    except EmailAlreadyRegisteredError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User with this email already exists")

    return schemas.AuthResponse(
        user=schemas.User.model_validate(user),
        access_token=create_token_for_user(user),
    )

@router.post("/token", response_model=schemas.Token)
async def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    db: DBDep,
):
    """OAuth2 password flow; the username field carries the email."""
    user = await authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise invalid_login()
    return schemas.Token(access_token=create_token_for_user(user))

@router.post("/login", response_model=schemas.AuthResponse)
async def login(db: DBDep, credentials: Optional[schemas.UserLogin] = Body(None)):
    """JSON login used by the TimeFlow client."""
    if credentials is None or not credentials.email or not credentials.password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email and password are required")
    user = await authenticate_user(db, credentials.email, credentials.password)
    if not user:
        raise invalid_login()
    return schemas.AuthResponse(
        user=schemas.User.model_validate(user),
        access_token=create_token_for_user(user),
    )

@router.get("/me", response_model=schemas.User)
async def read_current_user(current_user: CurrentUserDep):
    """Get current user info"""
    return current_user
