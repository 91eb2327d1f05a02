"""Bearer session tokens and the dependencies that resolve the calling user.

Sign-in happens upstream; this service only needs a signed user id. Accounts are
provisioned on the first authenticated request.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User


SESSION_TOKEN_TYPE = "photo_session"

auth_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    expires_at: int


def issue_session_token(user_id: str, *, ttl_hours: Optional[int] = None) -> str:
    """Sign a bearer token for ``user_id``."""
    if not user_id:
        raise ValueError("user_id is required to issue a session token.")
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS), 1))
    claims = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Missing Bearer session token.")

    try:
        claims = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise _unauthorized("Invalid or expired session token.") from None

    user_id = str(claims.get("sub") or "").strip()
    if claims.get("type") != SESSION_TOKEN_TYPE or not user_id or "exp" not in claims:
        raise _unauthorized("Invalid session token.")
    return AuthContext(user_id=user_id, expires_at=int(claims["exp"]))


async def ensure_user(db: AsyncSession, auth: AuthContext) -> User:
    """Load the caller's account, provisioning it on first use."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    db.add(User(id=auth.user_id))
    try:
        await db.commit()
    except IntegrityError:
        # Another request provisioned the same account first.
        await db.rollback()
    result = await db.execute(select(User).where(User.id == auth.user_id))
    return result.scalar_one()
