"""
ShiftTrack API Dependencies

Dependency injection for DB sessions, operator identity and the broadcaster.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.security import is_supervisor
from db.session import AsyncSessionLocal
from realtime.broadcast import Broadcaster

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

# Dev operator_id must match the seeded admin operator
DEV_OPERATOR_ID = "00000000-0000-0000-0000-000000000001"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return the operator payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": DEV_OPERATOR_ID,
            "operator_id": DEV_OPERATOR_ID,
            "email": "dev@shifttrack.local",
            "role": "ADMIN",
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    payload.setdefault("operator_id", payload.get("sub"))
    return payload


async def require_supervisor(user: dict = Depends(get_current_user)) -> dict:
    if not is_supervisor(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Supervisor role required",
        )
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if str(user.get("role", "")).upper() != "ADMIN":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


def get_broadcaster(request: Request) -> Broadcaster | None:
    return getattr(request.app.state, "broadcaster", None)
