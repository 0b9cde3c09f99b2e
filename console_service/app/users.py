from typing import List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from .db import transaction
from .errors import DuplicateValue, PrincipalNotFound
from .models import User

logger = structlog.get_logger(__name__)


async def _ensure_unique(
    session: AsyncSession, login: Optional[str], email: Optional[str], exclude_id: Optional[str] = None
) -> None:
    clash = await repo.find_user_by_login_or_email(session, login, email, exclude_id)
    if clash is not None:
        raise DuplicateValue("Логин или email уже используется", login=login, email=email)


async def list_users(
    session: AsyncSession, page: int, per_page: int, search: Optional[str] = None
) -> Tuple[List[User], int]:
    return await repo.paginate(session, repo.users_query(search), page, per_page)


async def get_user(session: AsyncSession, user_id: str) -> User:
    user = await repo.get_user(session, user_id)
    if user is None:
        raise PrincipalNotFound(user_id=user_id)
    return user


async def create_user(session: AsyncSession, **fields) -> User:
    """Создать пользователя; login и email уникальны."""
    async with transaction(session):
        await _ensure_unique(session, fields.get("login"), fields.get("email"))
        user = User(**fields)
        session.add(user)
        await session.flush()
    logger.info("user_created", user_id=user.id, login=user.login)
    return user


async def update_user(session: AsyncSession, user_id: str, **fields) -> User:
    async with transaction(session):
        user = await get_user(session, user_id)
        await _ensure_unique(session, fields.get("login"), fields.get("email"), exclude_id=user_id)
        for key, value in fields.items():
            setattr(user, key, value)
    logger.info("user_updated", user_id=user_id, fields=sorted(fields))
    return user
