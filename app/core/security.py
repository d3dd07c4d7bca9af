# app/core/security.py
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt, JWTError

from app.core.config import settings
from app.schemas.auth import TokenData


# Tokens are issued by the identity service; this helper mints them for local use and tests
def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    to_encode = dict(data)
    expire = datetime.utcnow() + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _decode_raw(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


# Decode Access Token
def decode_access_token(token: str) -> TokenData:
    payload = _decode_raw(token)
    if not payload:
        return TokenData()
    return TokenData(username=payload.get("sub"), role=payload.get("role"))
