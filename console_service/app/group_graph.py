"""
Граф групп: членство пользователей, вложенность групп и запросы по графу.

Рёбра GroupRelation направлены от родителя к потомку (потомок входит
в родителя). Множество рёбер остаётся ациклическим: ребро parent→child
отклоняется, если parent уже достижим из child. Проверка и вставка
выполняются в одной транзакции под блокировкой графа.
"""
from typing import Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from .db import lock_group_graph, transaction
from .errors import (
    CycleDetected,
    DuplicateMembership,
    DuplicateRelation,
    GroupNotFound,
    PrincipalNotFound,
    SelfRelation,
    ValidationFailure,
)
from .models import Group, GroupMembership, GroupRelation, MemberType, SubjectType, User

logger = structlog.get_logger(__name__)


async def _require_group(session: AsyncSession, group_id: str) -> Group:
    group = await repo.get_group(session, group_id)
    if group is None:
        raise GroupNotFound(group_id=group_id)
    return group


async def _require_user(session: AsyncSession, user_id: str) -> User:
    user = await repo.get_user(session, user_id)
    if user is None:
        raise PrincipalNotFound(user_id=user_id)
    return user


async def is_reachable(session: AsyncSession, start_id: str, target_id: str) -> bool:
    """
    Есть ли путь start→...→target по рёбрам родитель→потомок.
    Обход в ширину по уровням: один запрос на уровень графа.
    """
    if start_id == target_id:
        return True
    seen: Set[str] = {start_id}
    frontier: Set[str] = {start_id}
    while frontier:
        children = await repo.child_group_ids(session, frontier)
        if target_id in children:
            return True
        frontier = children - seen
        seen |= frontier
    return False


async def ancestor_ids(session: AsyncSession, group_id: str) -> Set[str]:
    """Все группы, из которых указанная достижима (транзитивные родители)."""
    seen: Set[str] = set()
    frontier: Set[str] = {group_id}
    while frontier:
        parents = await repo.parent_group_ids(session, frontier)
        frontier = parents - seen - {group_id}
        seen |= frontier
    return seen


def find_cycle(edges: Iterable[Tuple[str, str]]) -> Optional[List[str]]:
    """
    Найти цикл в наборе рёбер (DFS с раскраской вершин).
    :return: вершины цикла по порядку или None, если граф ациклический
    """
    graph: dict = {}
    for parent, child in edges:
        graph.setdefault(parent, []).append(child)
        graph.setdefault(child, [])

    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}
    for root in graph:
        if color[root] != white:
            continue
        path = [root]
        stack = [iter(graph[root])]
        color[root] = grey
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = black
                stack.pop()
                continue
            if color[nxt] == grey:
                return path[path.index(nxt):]
            if color[nxt] == white:
                color[nxt] = grey
                path.append(nxt)
                stack.append(iter(graph[nxt]))
    return None


async def verify_graph(session: AsyncSession) -> Optional[List[str]]:
    """Проверка целостности: цикл в текущем графе групп или None."""
    return find_cycle(await repo.all_relations(session))


# Членство пользователей


async def add_membership(session: AsyncSession, group_id: str, user_id: str) -> GroupMembership:
    """
    Добавить пользователя в группу.
    :raises GroupNotFound, PrincipalNotFound: если группа или пользователь не существуют
    :raises DuplicateMembership: если пользователь уже состоит в группе
    """
    async with transaction(session):
        await _require_group(session, group_id)
        await _require_user(session, user_id)
        if await repo.membership_exists(session, group_id, user_id):
            logger.info("membership_duplicate", group_id=group_id, user_id=user_id)
            raise DuplicateMembership(group_id=group_id, user_id=user_id)
        membership = GroupMembership(group_id=group_id, user_id=user_id)
        session.add(membership)
        await session.flush()
    logger.info("membership_added", group_id=group_id, user_id=user_id)
    return membership


async def remove_membership(session: AsyncSession, group_id: str, user_id: str) -> int:
    """
    Удалить пользователя из группы. Идемпотентно: при отсутствии записи вернёт 0.
    """
    async with transaction(session):
        removed = await repo.delete_memberships(session, group_id=group_id, user_id=user_id)
    logger.info("membership_removed", group_id=group_id, user_id=user_id, removed=removed)
    return removed


# Вложенность групп


async def add_group_relation(session: AsyncSession, parent_id: str, child_id: str) -> GroupRelation:
    """
    Вложить группу child в группу parent.
    Все проверки выполняются до вставки; при ошибке хранилище не меняется.
    :raises SelfRelation: parent и child совпадают
    :raises GroupNotFound: одна из групп не существует
    :raises DuplicateRelation: ребро уже существует
    :raises CycleDetected: parent достижим из child
    """
    if parent_id == child_id:
        logger.info("group_relation_rejected", reason="self", group_id=parent_id)
        raise SelfRelation(group_id=parent_id)

    async with transaction(session):
        await lock_group_graph(session)
        await _require_group(session, parent_id)
        await _require_group(session, child_id)
        if await repo.relation_exists(session, parent_id, child_id):
            logger.info(
                "group_relation_rejected", reason="duplicate", parent_id=parent_id, child_id=child_id
            )
            raise DuplicateRelation(parent_id=parent_id, child_id=child_id)
        if await is_reachable(session, child_id, parent_id):
            logger.warning(
                "group_relation_rejected", reason="cycle", parent_id=parent_id, child_id=child_id
            )
            raise CycleDetected(parent_id=parent_id, child_id=child_id)
        relation = GroupRelation(parent_group_id=parent_id, child_group_id=child_id)
        session.add(relation)
        await session.flush()
    logger.info("group_relation_added", parent_id=parent_id, child_id=child_id)
    return relation


async def remove_group_relation(session: AsyncSession, parent_id: str, child_id: str) -> int:
    """Удалить одно ребро parent→child (без каскада на потомков). Идемпотентно."""
    async with transaction(session):
        await lock_group_graph(session)
        removed = await repo.delete_relation(session, parent_id, child_id)
    logger.info("group_relation_removed", parent_id=parent_id, child_id=child_id, removed=removed)
    return removed


async def add_member(
    session: AsyncSession, group_id: str, member_type: MemberType, member_id: str
):
    """Добавить участника группы: пользователя или вложенную группу."""
    if member_type == MemberType.USER:
        return await add_membership(session, group_id, member_id)
    if member_type == MemberType.GROUP:
        return await add_group_relation(session, group_id, member_id)
    raise ValidationFailure(member_type=member_type)


async def remove_member(
    session: AsyncSession, group_id: str, member_type: MemberType, member_id: str
) -> int:
    """Удалить участника группы: пользователя или вложенную группу."""
    if member_type == MemberType.USER:
        return await remove_membership(session, group_id, member_id)
    if member_type == MemberType.GROUP:
        return await remove_group_relation(session, group_id, member_id)
    raise ValidationFailure(member_type=member_type)


# Запросы


async def members_of(session: AsyncSession, group_id: str) -> List[dict]:
    """
    Участники группы на один уровень: пользователи, затем вложенные группы.
    Каждый элемент: {id, type: 'user'|'group', name}.
    """
    await _require_group(session, group_id)
    users = await repo.get_group_users(session, group_id)
    children = await repo.get_child_groups(session, group_id)
    return [
        {"id": u.id, "type": MemberType.USER.value, "name": u.full_name} for u in users
    ] + [
        {"id": g.id, "type": MemberType.GROUP.value, "name": g.name} for g in children
    ]


async def descendants_excluding_ancestors_of(
    session: AsyncSession,
    exclude_group_id: str,
    search: Optional[str] = None,
    transitive: bool = False,
) -> List[Group]:
    """
    Кандидаты на вложение в группу: все группы, кроме самой группы
    и её прямых потомков.
    При transitive=True дополнительно исключаются все группы, из которых
    exclude_group_id достижима (их вложение дало бы цикл).
    """
    await _require_group(session, exclude_group_id)
    excluded = {exclude_group_id}
    excluded |= await repo.child_group_ids(session, [exclude_group_id])
    if transitive:
        excluded |= await ancestor_ids(session, exclude_group_id)

    stmt = repo.groups_query(search).where(Group.id.notin_(excluded))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def user_groups(session: AsyncSession, user_id: str) -> List[Group]:
    """Группы, в которых пользователь состоит напрямую."""
    await _require_user(session, user_id)
    return await repo.get_user_groups(session, user_id)


# Жизненный цикл групп и пользователей


async def list_groups(
    session: AsyncSession, page: int, per_page: int, search: Optional[str] = None
) -> Tuple[List[Group], int]:
    return await repo.paginate(session, repo.groups_query(search), page, per_page)


async def get_group(session: AsyncSession, group_id: str) -> Group:
    return await _require_group(session, group_id)


async def create_group(session: AsyncSession, **fields) -> Group:
    """Создать группу; повторяющиеся имена допускаются."""
    async with transaction(session):
        group = Group(**{k: v for k, v in fields.items() if v is not None})
        session.add(group)
        await session.flush()
    logger.info("group_created", group_id=group.id, name=group.name)
    return group


async def update_group(session: AsyncSession, group_id: str, **fields) -> Group:
    async with transaction(session):
        group = await _require_group(session, group_id)
        for key, value in fields.items():
            setattr(group, key, value)
    logger.info("group_updated", group_id=group_id, fields=sorted(fields))
    return group


async def delete_group(session: AsyncSession, group_id: str) -> None:
    """
    Удалить группу каскадно: членства, рёбра вложенности (где группа
    родитель или потомок), доступы группы с их привязками, затем саму группу.
    """
    async with transaction(session):
        await lock_group_graph(session)
        group = await _require_group(session, group_id)
        memberships = await repo.delete_memberships(session, group_id=group_id)
        relations = await repo.delete_relations_touching(session, group_id)
        accesses = await repo.delete_subject_accesses(session, SubjectType.GROUP.value, group_id)
        await repo.delete_by_id(session, Group, group.id)
    logger.info(
        "group_deleted",
        group_id=group_id,
        memberships=memberships,
        relations=relations,
        accesses=accesses,
    )


async def delete_user(session: AsyncSession, user_id: str) -> None:
    """Удалить пользователя после очистки его членств и прямых доступов."""
    async with transaction(session):
        user = await _require_user(session, user_id)
        memberships = await repo.delete_memberships(session, user_id=user_id)
        accesses = await repo.delete_subject_accesses(session, SubjectType.USER.value, user_id)
        await repo.delete_by_id(session, User, user.id)
    logger.info("user_deleted", user_id=user_id, memberships=memberships, accesses=accesses)
