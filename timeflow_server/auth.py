from datetime import datetime, timedelta, timezone
from typing import Optional, Annotated
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import logging

from timeflow_server.core.database import get_db
from timeflow_server.core.models import User, Activity
from timeflow_server.core.settings import settings
from timeflow_server import schemas

logger = logging.getLogger(__name__)

# Security
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/token", auto_error=False)

# Exception for unauthorized access
credentials_exception = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)

class EmailAlreadyRegisteredError(Exception):
    """Raised when registering an email that already has an account."""

def normalize_email(email: str) -> str:
    return email.strip().lower()

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "iat": datetime.now(timezone.utc)})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def create_token_for_user(user: User) -> str:
    """Create an access token whose subject is the user's id."""
    return create_access_token(data={"sub": str(user.id), "email": user.email})

async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    """Get a user by email"""
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()

async def authenticate_user(db: AsyncSession, email: str, password: str) -> Optional[User]:
    """Authenticate a user"""
    user = await get_user_by_email(db, email)
    if not user:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user

async def create_user(db: AsyncSession, email: str, password: str, name: Optional[str] = None) -> User:
    """Create a new user together with the default activity every account starts with."""
    if await get_user_by_email(db, email):
        raise EmailAlreadyRegisteredError(email)

    db_user = User(
        email=normalize_email(email),
        hashed_password=get_password_hash(password),
        name=name,
    )
    db.add(db_user)
    await db.flush()

    db.add(Activity(
        user_id=db_user.id,
        name=settings.DEFAULT_ACTIVITY_NAME,
        icon=settings.DEFAULT_ACTIVITY_ICON,
        color=settings.DEFAULT_ACTIVITY_COLOR,
        is_default=True,
    ))
    await db.commit()
    await db.refresh(db_user)
    logger.info(f"Registered user {db_user.id}")
    return db_user

def decode_token(token: str) -> schemas.TokenData:
    """Decode a bearer token, raising the 401 exception for anything unusable."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        return schemas.TokenData(user_id=int(subject), email=payload.get("email"))
    except (JWTError, ValueError):
        raise credentials_exception

async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Get the current authenticated user"""
    if not token:
        raise credentials_exception

    token_data = decode_token(token)
    user = await db.get(User, token_data.user_id)
    if user is None:
        raise credentials_exception
    return user

async def require_auth(current_user: User = Depends(get_current_user)) -> int:
    """Resolve the request's credentials to a user id, or reject with 401."""
    return current_user.id

# Type annotations for dependencies
DBDep = Annotated[AsyncSession, Depends(get_db)]
UserIdDep = Annotated[int, Depends(require_auth)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]
