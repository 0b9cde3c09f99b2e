"""
Разрешение эффективных доступов.

Доступ пользователя складывается из прямых грантов (user_type=USER,
source=user_id) и грантов групп, в которых пользователь состоит
напрямую (user_type=GROUP, source in group_ids). Вложенность групп
при разрешении не раскрывается.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from .errors import AccessNotFound, PrincipalNotFound, ResourceNotFound
from .models import (
    Access,
    GroupMembership,
    GroupSubject,
    Resource,
    ResourceAccess,
    Service,
    SubjectType,
    UserSubject,
)
from .settings import settings

logger = structlog.get_logger(__name__)

DIRECT_ASSIGNMENT = "Прямое назначение"

# Метки категорий справочника доступов
ACCESS_CATEGORIES: Dict[str, str] = {
    "groups": "Группы",
    "roles": "Роль",
    "internal": "Внутренний",
}


@dataclass(frozen=True)
class EffectiveAccess:
    resource_name: str
    service_name: str
    access_type: str
    permission: str
    assigned_through: str


def assigned_through(access: Access) -> str:
    """Человекочитаемое происхождение гранта."""
    subject = access.subject
    if isinstance(subject, UserSubject):
        return DIRECT_ASSIGNMENT
    if isinstance(subject, GroupSubject):
        return f"Группа {subject.id}"
    raise TypeError(subject)


async def effective_access(session: AsyncSession, user_id: str) -> List[EffectiveAccess]:
    """
    Эффективные доступы пользователя одним запросом:
    ResourceAccess ⋈ Access ⋈ Resource ⋈ Service с фильтром по прямым
    грантам и грантам прямых групп пользователя.
    Порядок: ресурс, сервис, название права.
    :raises PrincipalNotFound: пользователь не существует
    """
    if await repo.get_user(session, user_id) is None:
        raise PrincipalNotFound(user_id=user_id)

    direct_groups = select(GroupMembership.group_id).where(
        GroupMembership.user_id == user_id
    )
    stmt = (
        select(Access, Resource.name, Service.name)
        .join(ResourceAccess, ResourceAccess.access_id == Access.id)
        .join(Resource, Resource.id == ResourceAccess.resource_id)
        .join(Service, Service.id == Resource.service_id)
        .where(
            or_(
                and_(
                    Access.user_type == SubjectType.USER.value,
                    Access.source == user_id,
                ),
                and_(
                    Access.user_type == SubjectType.GROUP.value,
                    Access.source.in_(direct_groups),
                ),
            )
        )
        .order_by(Resource.name, Service.name, Access.name, Access.id)
    )
    rows = (await session.execute(stmt)).all()
    result = [
        EffectiveAccess(
            resource_name=resource_name,
            service_name=service_name,
            access_type=access.type,
            permission=access.name,
            assigned_through=assigned_through(access),
        )
        for access, resource_name, service_name in rows
    ]
    logger.debug("effective_access_resolved", user_id=user_id, count=len(result))
    return result


async def access_for_resource(session: AsyncSession, resource_id: str) -> List[Access]:
    """
    Доступы, привязанные к ресурсу (пустой список, если привязок нет).
    :raises ResourceNotFound: ресурс не существует
    """
    if await repo.get_resource(session, resource_id) is None:
        raise ResourceNotFound(resource_id=resource_id)
    return await repo.get_resource_accesses(session, resource_id)


def category_label(filter_type: str) -> str:
    """Перевести тип фильтра (groups/roles/internal) в хранимую метку категории."""
    return ACCESS_CATEGORIES.get(filter_type, filter_type)


async def access_list(
    session: AsyncSession,
    filter_type: Optional[str] = None,
    query: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Access]:
    """
    Справочник доступов с фильтром по категории и поиском по подстроке
    в name/source/type без учёта регистра. Без limit выборка не ограничена.
    """
    category = category_label(filter_type) if filter_type else None
    stmt = repo.accesses_query(category, query)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def search_access(session: AsyncSession, query: str) -> List[Access]:
    """Поиск для подсказок ввода: не более ACCESS_SEARCH_LIMIT записей."""
    return await access_list(session, query=query, limit=settings.access_search_limit)


async def get_access(session: AsyncSession, access_id: str) -> Access:
    access = await repo.get_access(session, access_id)
    if access is None:
        raise AccessNotFound(access_id=access_id)
    return access
