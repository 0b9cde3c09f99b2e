"""
Администрирование грантов: создание описаний доступа и их привязка к ресурсам.
"""
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from .db import transaction
from .errors import AccessNotFound, GroupNotFound, PrincipalNotFound, ResourceNotFound
from .models import Access, AccessType, SubjectType

logger = structlog.get_logger(__name__)


def _unique(ids: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(ids))


async def create_access(
    session: AsyncSession,
    user_type: SubjectType,
    source: str,
    type: AccessType,
    name: str,
    category: Optional[str] = None,
) -> Access:
    """
    Создать описание доступа.
    source обязан ссылаться на существующего пользователя (USER)
    или группу (GROUP).
    """
    async with transaction(session):
        if user_type == SubjectType.USER:
            if await repo.get_user(session, source) is None:
                raise PrincipalNotFound(user_id=source)
        elif await repo.get_group(session, source) is None:
            raise GroupNotFound(group_id=source)
        access = Access(
            user_type=SubjectType(user_type).value,
            source=source,
            type=AccessType(type).value,
            name=name,
            category=category,
        )
        session.add(access)
        await session.flush()
    logger.info("access_created", access_id=access.id, user_type=access.user_type, source=source)
    return access


async def save_access(session: AsyncSession, resource_id: str, access_ids: Sequence[str]) -> List[str]:
    """
    Заменить набор доступов ресурса целиком: удалить все текущие привязки
    и вставить по одной на каждый уникальный id.
    Существование ресурса и доступов проверяется до удаления.
    :return: привязанные id в порядке входа, без дубликатов
    :raises ResourceNotFound, AccessNotFound
    """
    wanted = _unique(access_ids)
    async with transaction(session):
        if await repo.get_resource(session, resource_id) is None:
            raise ResourceNotFound(resource_id=resource_id)
        missing = set(wanted) - await repo.existing_access_ids(session, wanted)
        if missing:
            raise AccessNotFound(access_ids=sorted(missing))
        removed = await repo.delete_resource_links(session, resource_ids=[resource_id])
        await repo.insert_resource_links(session, resource_id, wanted)
    logger.info("access_saved", resource_id=resource_id, removed=removed, linked=len(wanted))
    return wanted


async def remove_access_grant(session: AsyncSession, access_id: str, purge: bool = False) -> int:
    """
    Отвязать доступ от всех ресурсов; при purge=True удалить и само описание.
    :return: количество удалённых привязок
    :raises AccessNotFound
    """
    async with transaction(session):
        access = await repo.get_access(session, access_id)
        if access is None:
            raise AccessNotFound(access_id=access_id)
        removed = await repo.delete_resource_links(session, access_id=access_id)
        if purge:
            await repo.delete_by_id(session, Access, access.id)
    logger.info("access_grant_removed", access_id=access_id, links=removed, purged=purge)
    return removed
