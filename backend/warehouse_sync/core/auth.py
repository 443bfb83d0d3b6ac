from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from fastapi import HTTPException, Security, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError
from warehouse_sync.core.config import get_settings
from warehouse_sync.models.schemas import UserClaims

settings = get_settings()
security = HTTPBearer()


def create_access_token(user_id: str) -> str:
    """
    Issue a bearer token for a warehouse operations caller such as the
    scanner service.

    The subject is the caller id recorded in the inventory audit log.
    """
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)

    claims = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp())
    }

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return token


def verify_token(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """
    Resolve the caller of a warehouse route from its bearer token.

    Raises:
        HTTPException: 401 if the token does not verify or lacks a subject
    """
    token = credentials.credentials

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
        claims = UserClaims(**payload)

    except (JWTError, ValidationError) as e:
        raise HTTPException(
            status_code=401,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return claims.sub


# Every warehouse route depends on this, reads included
async def get_current_user(user_id: str = Depends(verify_token)) -> str:
    """Caller id used for rate-limit keys and audit rows."""
    return user_id
