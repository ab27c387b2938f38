"""Bearer-token authentication for the teacher API.

Tokens are issued by the host platform's sign-in flow; this module only
verifies them and turns the ``sub`` claim into the tenant id that scopes
every document, grade and conversation lookup.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from pydantic import BaseModel

from gradewise.core.logging import get_logger
from gradewise.core.config import settings

logger = get_logger(__name__)

TOKEN_LIFETIME = timedelta(hours=24)

security = HTTPBearer(auto_error=False)


class Teacher(BaseModel):
    """Authenticated teacher. ``id`` doubles as the tenant id."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


def create_access_token(teacher: Teacher, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT for a teacher.

    Used by the platform bridge and by tests; the API itself never issues tokens.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else TOKEN_LIFETIME)

    payload = {
        "sub": teacher.id,
        "email": teacher.email,
        "name": teacher.name,
        "exp": expire,
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Teacher:
    """Decode and validate a JWT.

    Raises:
        HTTPException: 401 if the token is expired, malformed or has no subject
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token attempted")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token attempted: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return Teacher(id=subject, email=payload.get("email"), name=payload.get("name"))


async def get_current_teacher(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Teacher:
    """FastAPI dependency returning the authenticated teacher.

    Example:
        >>> @router.get("/protected")
        >>> async def protected_route(teacher: Teacher = Depends(get_current_teacher)):
        ...     return {"tenant": teacher.id}
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    teacher = decode_token(credentials.credentials)
    logger.debug("Teacher authenticated", extra={"tenant_id": teacher.id})
    return teacher
