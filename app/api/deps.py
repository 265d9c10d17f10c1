"""Actor resolution for the booking routes.

Tokens are issued by the auth service; here they are only decoded and mapped to
a ``User`` row. Role guards are built with ``require_role``.
"""
import logging
from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.config import settings
from app.core.exceptions import ForbiddenError
from app.models.user import TokenData
from app.db.database import get_db
from app.db.db_models import User, UserRole

logger = logging.getLogger(__name__)

reusable_oauth2 = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_STR}/auth/login"
)


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
        token_data = TokenData(user_id=payload.get("sub"))
    except (JWTError, ValidationError):
        raise _credentials_exception()
    if token_data.user_id is None:
        raise _credentials_exception()
    return token_data


async def get_current_user(
    token: str = Depends(reusable_oauth2),
    db: AsyncSession = Depends(get_db),
) -> User:
    token_data = decode_token(token)
    user = await db.get(User, token_data.user_id)
    if user is None:
        logger.info(f"Token subject {token_data.user_id} has no user record")
        raise _credentials_exception()
    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user),
) -> User:
    if not current_user.is_active:
        raise ForbiddenError("Account is deactivated")
    return current_user


def require_role(role: UserRole) -> Callable:
    """Dependency that admits only active users holding ``role``."""

    async def _guard(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role != role.value:
            raise ForbiddenError(f"Only {role.value.replace('_', ' ')}s can perform this action")
        return current_user

    return _guard


get_current_customer = require_role(UserRole.CUSTOMER)
get_current_provider = require_role(UserRole.PROVIDER)
