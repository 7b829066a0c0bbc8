import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError

from libtrack.core.config import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Admin console sends Authorization: Bearer <token>; routes that only record the actor accept no token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_PREFIX}/administrators/login", auto_error=False)


class TokenPayload(BaseModel):
    sub: str  # admin_id
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None


class AdminActor(BaseModel):
    admin_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(plain_password, password_hash)
    except ValueError as e:
        # Unrecognized hash format
        logger.warning(f"Password hash could not be verified: {e}")
        return False


def create_access_token(data: Dict[str, Any], expires_minutes: Optional[int] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> AdminActor:
    """Decode a login token into the acting administrator. Raises 401 on any failure."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": True},
        )
        token_data = TokenPayload(**payload)
        return AdminActor(
            admin_id=int(token_data.sub),
            name=token_data.name,
            email=token_data.email,
            role=token_data.role,
        )
    except JWTError as e:
        logger.warning(f"Token validation failed: {e}")
        raise credentials_exception from e
    except (ValidationError, ValueError) as e:
        logger.warning(f"Token payload validation failed: {e}")
        raise credentials_exception from e


async def get_optional_admin(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[AdminActor]:
    """Acting administrator for audit entries, or None when the request carries no token."""
    if not token:
        return None
    return decode_access_token(token)
