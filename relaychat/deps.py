from typing import AsyncIterator, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from . import crud, models, security
from .database import AsyncSessionLocal

bearer_scheme = HTTPBearer(auto_error=False)

async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as db:
        yield db

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> models.User:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    user_id = security.verify_access_token(credentials.credentials)
    if user_id is None:
        raise _unauthorized("Invalid authentication credentials")
    user = await crud.get_user(db, user_id)
    if not user:
        raise _unauthorized("Invalid authentication credentials")
    return user
