from typing import Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import Select, delete, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import (
    Access,
    Group,
    GroupMembership,
    GroupRelation,
    Resource,
    ResourceAccess,
    Service,
    User,
)

# Функции этого модуля не фиксируют транзакцию: commit/rollback
# выполняет вызывающий код через db.transaction().


def contains(column, query: str):
    """Регистронезависимый поиск подстроки; % и _ в запросе экранируются."""
    return column.icontains(query, autoescape=True)


async def paginate(
    session: AsyncSession, stmt: Select, page: int, per_page: int
) -> Tuple[list, int]:
    """
    Выполнить запрос постранично (skip/take) и вернуть (элементы, всего).
    :param page: номер страницы, начиная с 1
    """
    total_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = (await session.execute(total_stmt)).scalar_one()
    offset = (max(page, 1) - 1) * per_page
    result = await session.execute(stmt.offset(offset).limit(per_page))
    return list(result.scalars().all()), total


# Пользователи


async def get_user(session: AsyncSession, user_id: str) -> Optional[User]:
    """Вернуть пользователя по идентификатору или None."""
    return await session.get(User, user_id)


async def find_user_by_login_or_email(
    session: AsyncSession, login: Optional[str], email: Optional[str], exclude_id: Optional[str] = None
) -> Optional[User]:
    conditions = []
    if login:
        conditions.append(User.login == login)
    if email:
        conditions.append(User.email == email)
    if not conditions:
        return None
    stmt = select(User).where(or_(*conditions))
    if exclude_id:
        stmt = stmt.where(User.id != exclude_id)
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none()


def users_query(search: Optional[str] = None) -> Select:
    """Запрос пользователей с поиском по имени, фамилии, логину и отделу."""
    stmt = select(User).order_by(User.last_name, User.first_name)
    if search:
        stmt = stmt.where(
            or_(
                contains(User.first_name, search),
                contains(User.last_name, search),
                contains(User.login, search),
                contains(User.department, search),
            )
        )
    return stmt


# Группы и их граф


async def get_group(session: AsyncSession, group_id: str) -> Optional[Group]:
    """Вернуть группу по идентификатору или None."""
    return await session.get(Group, group_id)


def groups_query(search: Optional[str] = None) -> Select:
    """Запрос групп (по имени) с поиском по названию и описанию."""
    stmt = select(Group).order_by(Group.name, Group.id)
    if search:
        stmt = stmt.where(
            or_(contains(Group.name, search), contains(Group.description, search))
        )
    return stmt


async def get_user_groups(session: AsyncSession, user_id: str) -> List[Group]:
    """Вернуть группы, в которых пользователь состоит напрямую."""
    stmt = (
        select(Group)
        .join(GroupMembership, GroupMembership.group_id == Group.id)
        .where(GroupMembership.user_id == user_id)
        .order_by(Group.name)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_group_users(session: AsyncSession, group_id: str) -> List[User]:
    """Пользователи, напрямую входящие в группу."""
    stmt = (
        select(User)
        .join(GroupMembership, GroupMembership.user_id == User.id)
        .where(GroupMembership.group_id == group_id)
        .order_by(User.last_name, User.first_name)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_child_groups(session: AsyncSession, group_id: str) -> List[Group]:
    """Группы, вложенные в указанную (один уровень)."""
    stmt = (
        select(Group)
        .join(GroupRelation, GroupRelation.child_group_id == Group.id)
        .where(GroupRelation.parent_group_id == group_id)
        .order_by(Group.name)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def membership_exists(session: AsyncSession, group_id: str, user_id: str) -> bool:
    stmt = select(GroupMembership.id).where(
        GroupMembership.group_id == group_id, GroupMembership.user_id == user_id
    )
    return (await session.execute(stmt)).first() is not None


async def relation_exists(session: AsyncSession, parent_id: str, child_id: str) -> bool:
    stmt = select(GroupRelation.id).where(
        GroupRelation.parent_group_id == parent_id,
        GroupRelation.child_group_id == child_id,
    )
    return (await session.execute(stmt)).first() is not None


async def child_group_ids(session: AsyncSession, parent_ids: Iterable[str]) -> Set[str]:
    """Идентификаторы прямых потомков для набора групп."""
    parent_ids = list(parent_ids)
    if not parent_ids:
        return set()
    stmt = select(GroupRelation.child_group_id).where(
        GroupRelation.parent_group_id.in_(parent_ids)
    )
    return set((await session.execute(stmt)).scalars().all())


async def parent_group_ids(session: AsyncSession, child_ids: Iterable[str]) -> Set[str]:
    """Идентификаторы прямых родителей для набора групп."""
    child_ids = list(child_ids)
    if not child_ids:
        return set()
    stmt = select(GroupRelation.parent_group_id).where(
        GroupRelation.child_group_id.in_(child_ids)
    )
    return set((await session.execute(stmt)).scalars().all())


async def all_relations(session: AsyncSession) -> List[Tuple[str, str]]:
    """Все рёбра графа групп как пары (родитель, потомок)."""
    stmt = select(GroupRelation.parent_group_id, GroupRelation.child_group_id)
    return [tuple(row) for row in (await session.execute(stmt)).all()]


async def delete_memberships(
    session: AsyncSession,
    group_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> int:
    """
    Удалить членства по фильтру (группа и/или пользователь).
    :return: количество удалённых записей
    """
    stmt = delete(GroupMembership)
    if group_id is not None:
        stmt = stmt.where(GroupMembership.group_id == group_id)
    if user_id is not None:
        stmt = stmt.where(GroupMembership.user_id == user_id)
    result = await session.execute(stmt)
    return result.rowcount or 0


async def delete_relation(session: AsyncSession, parent_id: str, child_id: str) -> int:
    stmt = delete(GroupRelation).where(
        GroupRelation.parent_group_id == parent_id,
        GroupRelation.child_group_id == child_id,
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def delete_relations_touching(session: AsyncSession, group_id: str) -> int:
    """Удалить все рёбра, где группа является родителем или потомком."""
    stmt = delete(GroupRelation).where(
        or_(
            GroupRelation.parent_group_id == group_id,
            GroupRelation.child_group_id == group_id,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


# Сервисы и ресурсы


async def get_service(session: AsyncSession, service_id: str) -> Optional[Service]:
    """Вернуть сервис вместе с ресурсами или None."""
    stmt = (
        select(Service)
        .options(selectinload(Service.resources))
        .where(Service.id == service_id)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_service_by_name(session: AsyncSession, name: str) -> Optional[Service]:
    stmt = (
        select(Service)
        .options(selectinload(Service.resources))
        .where(Service.name == name)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_services(session: AsyncSession) -> List[Service]:
    """Все сервисы (по имени) с ресурсами."""
    stmt = select(Service).options(selectinload(Service.resources)).order_by(Service.name)
    return list((await session.execute(stmt)).scalars().all())


async def get_resource(session: AsyncSession, resource_id: str) -> Optional[Resource]:
    """Вернуть ресурс по идентификатору или None."""
    return await session.get(Resource, resource_id)


async def resource_ids_of_service(session: AsyncSession, service_id: str) -> List[str]:
    stmt = select(Resource.id).where(Resource.service_id == service_id)
    return list((await session.execute(stmt)).scalars().all())


# Доступы


async def get_access(session: AsyncSession, access_id: str) -> Optional[Access]:
    """Вернуть доступ по идентификатору или None."""
    return await session.get(Access, access_id)


async def existing_access_ids(session: AsyncSession, access_ids: Iterable[str]) -> Set[str]:
    access_ids = list(access_ids)
    if not access_ids:
        return set()
    stmt = select(Access.id).where(Access.id.in_(access_ids))
    return set((await session.execute(stmt)).scalars().all())


def accesses_query(
    category: Optional[str] = None, query: Optional[str] = None
) -> Select:
    """
    Запрос справочника доступов.
    :param category: точная метка категории (например, 'Группы')
    :param query: подстрока для поиска по name/source/type без учёта регистра
    """
    stmt = select(Access).order_by(Access.name, Access.id)
    if category:
        stmt = stmt.where(Access.category == category)
    if query:
        stmt = stmt.where(
            or_(
                contains(Access.name, query),
                contains(Access.source, query),
                contains(Access.type, query),
            )
        )
    return stmt


async def get_resource_accesses(session: AsyncSession, resource_id: str) -> List[Access]:
    """Вернуть доступы, привязанные к ресурсу."""
    stmt = (
        select(Access)
        .join(ResourceAccess, ResourceAccess.access_id == Access.id)
        .where(ResourceAccess.resource_id == resource_id)
        .order_by(Access.name, Access.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def delete_resource_links(
    session: AsyncSession,
    resource_ids: Optional[Sequence[str]] = None,
    access_id: Optional[str] = None,
) -> int:
    """
    Удалить привязки ресурс→доступ по фильтру.
    :return: количество удалённых записей
    """
    stmt = delete(ResourceAccess)
    if resource_ids is not None:
        if not resource_ids:
            return 0
        stmt = stmt.where(ResourceAccess.resource_id.in_(list(resource_ids)))
    if access_id is not None:
        stmt = stmt.where(ResourceAccess.access_id == access_id)
    result = await session.execute(stmt)
    return result.rowcount or 0


async def insert_resource_links(
    session: AsyncSession, resource_id: str, access_ids: Sequence[str]
) -> None:
    """Массовая вставка привязок; дубликаты должны быть отфильтрованы заранее."""
    if not access_ids:
        return
    await session.execute(
        insert(ResourceAccess),
        [{"resource_id": resource_id, "access_id": a} for a in access_ids],
    )


async def delete_by_id(session: AsyncSession, model, entity_id: str) -> int:
    """Удалить одну строку по первичному ключу (без ORM-каскадов)."""
    result = await session.execute(delete(model).where(model.id == entity_id))
    return result.rowcount or 0


async def delete_resources(session: AsyncSession, resource_ids: Sequence[str]) -> int:
    if not resource_ids:
        return 0
    result = await session.execute(delete(Resource).where(Resource.id.in_(list(resource_ids))))
    return result.rowcount or 0


async def delete_subject_accesses(session: AsyncSession, user_type: str, source: str) -> int:
    """
    Удалить все доступы, выданные субъекту (user_type + source),
    вместе с их привязками к ресурсам.
    :return: количество удалённых доступов
    """
    owned = select(Access.id).where(Access.user_type == user_type, Access.source == source)
    await session.execute(
        delete(ResourceAccess).where(ResourceAccess.access_id.in_(owned))
    )
    result = await session.execute(
        delete(Access).where(Access.user_type == user_type, Access.source == source)
    )
    return result.rowcount or 0
