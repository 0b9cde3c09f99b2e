import random

import pytest
from sqlalchemy import func, select

from console_service.app import group_graph
from console_service.app import repositories as repo
from console_service.app.errors import (
    CycleDetected,
    DuplicateMembership,
    DuplicateRelation,
    GroupNotFound,
    PrincipalNotFound,
    SelfRelation,
    ValidationFailure,
)
from console_service.app.models import GroupMembership, GroupRelation, MemberType

from factories import make_group, make_user


async def count(session, model, *where) -> int:
    stmt = select(func.count()).select_from(model)
    if where:
        stmt = stmt.where(*where)
    return (await session.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_add_membership_twice_keeps_single_row(session):
    g = await make_group(session, "Engineering")
    u = await make_user(session, "alice")

    await group_graph.add_membership(session, g, u)
    with pytest.raises(DuplicateMembership):
        await group_graph.add_membership(session, g, u)

    assert await count(session, GroupMembership) == 1


@pytest.mark.asyncio
async def test_add_membership_unknown_principals(session):
    g = await make_group(session, "Engineering")
    u = await make_user(session, "alice")

    with pytest.raises(GroupNotFound):
        await group_graph.add_membership(session, "missing", u)
    with pytest.raises(PrincipalNotFound):
        await group_graph.add_membership(session, g, "missing")
    assert await count(session, GroupMembership) == 0


@pytest.mark.asyncio
async def test_remove_missing_membership_is_noop(session):
    g = await make_group(session, "Engineering")
    u = await make_user(session, "alice")
    other = await make_user(session, "bob")
    await group_graph.add_membership(session, g, other)

    assert await group_graph.remove_membership(session, g, u) == 0
    assert await count(session, GroupMembership) == 1

    assert await group_graph.remove_membership(session, g, other) == 1
    assert await count(session, GroupMembership) == 0


@pytest.mark.asyncio
async def test_self_relation_rejected(session):
    a = await make_group(session, "A")
    b = await make_group(session, "B")
    await group_graph.add_group_relation(session, a, b)

    for gid in (a, b, "not-even-a-group"):
        with pytest.raises(SelfRelation):
            await group_graph.add_group_relation(session, gid, gid)
    assert await count(session, GroupRelation) == 1


@pytest.mark.asyncio
async def test_duplicate_relation_rejected(session):
    a = await make_group(session, "A")
    b = await make_group(session, "B")
    await group_graph.add_group_relation(session, a, b)

    with pytest.raises(DuplicateRelation):
        await group_graph.add_group_relation(session, a, b)
    assert await count(session, GroupRelation) == 1


@pytest.mark.asyncio
async def test_three_edge_chain_cycle_rejected(session):
    a = await make_group(session, "A")
    b = await make_group(session, "B")
    c = await make_group(session, "C")
    await group_graph.add_group_relation(session, a, b)
    await group_graph.add_group_relation(session, b, c)
    before = sorted(await repo.all_relations(session))

    with pytest.raises(CycleDetected):
        await group_graph.add_group_relation(session, c, a)

    assert sorted(await repo.all_relations(session)) == before
    assert await group_graph.verify_graph(session) is None


@pytest.mark.asyncio
async def test_direct_reverse_edge_rejected(session):
    a = await make_group(session, "A")
    b = await make_group(session, "B")
    await group_graph.add_group_relation(session, a, b)

    with pytest.raises(CycleDetected):
        await group_graph.add_group_relation(session, b, a)


@pytest.mark.asyncio
async def test_diamond_is_not_a_cycle(session):
    top = await make_group(session, "Top")
    left = await make_group(session, "Left")
    right = await make_group(session, "Right")
    bottom = await make_group(session, "Bottom")

    await group_graph.add_group_relation(session, top, left)
    await group_graph.add_group_relation(session, top, right)
    await group_graph.add_group_relation(session, left, bottom)
    await group_graph.add_group_relation(session, right, bottom)
    await group_graph.add_group_relation(session, top, bottom)

    assert await count(session, GroupRelation) == 5
    assert await group_graph.is_reachable(session, top, bottom)
    assert not await group_graph.is_reachable(session, bottom, top)


@pytest.mark.asyncio
async def test_remove_relation_does_not_cascade(session):
    a = await make_group(session, "A")
    b = await make_group(session, "B")
    c = await make_group(session, "C")
    await group_graph.add_group_relation(session, a, b)
    await group_graph.add_group_relation(session, b, c)

    assert await group_graph.remove_group_relation(session, a, b) == 1
    assert await group_graph.remove_group_relation(session, a, b) == 0
    assert await repo.all_relations(session) == [(b, c)]

    # после удаления ребра обратное вложение снова допустимо
    await group_graph.add_group_relation(session, b, a)


@pytest.mark.parametrize("seed", range(8))
@pytest.mark.asyncio
async def test_random_relation_sequences_stay_acyclic(session, seed):
    rnd = random.Random(seed)
    ids = [await make_group(session, f"G{i}") for i in range(6)]
    accepted = set()

    for _ in range(40):
        parent, child = rnd.choice(ids), rnd.choice(ids)
        try:
            await group_graph.add_group_relation(session, parent, child)
        except ValidationFailure:
            continue
        accepted.add((parent, child))

    assert set(await repo.all_relations(session)) == accepted
    assert group_graph.find_cycle(accepted) is None
    assert await group_graph.verify_graph(session) is None


def test_find_cycle_reports_cycle_nodes():
    assert group_graph.find_cycle([("a", "b"), ("b", "c")]) is None
    cycle = group_graph.find_cycle([("a", "b"), ("b", "c"), ("c", "a"), ("c", "d")])
    assert sorted(cycle) == ["a", "b", "c"]
    assert group_graph.find_cycle([("x", "x")]) == ["x"]


@pytest.mark.asyncio
async def test_members_of_lists_users_then_child_groups_one_level(session):
    eng = await make_group(session, "Engineering")
    backend = await make_group(session, "Backend")
    db = await make_group(session, "DB")
    alice = await make_user(session, "alice", last_name="Ivanova", first_name="Alice")
    bob = await make_user(session, "bob")

    await group_graph.add_membership(session, eng, alice)
    await group_graph.add_membership(session, backend, bob)
    await group_graph.add_group_relation(session, eng, backend)
    await group_graph.add_group_relation(session, backend, db)

    members = await group_graph.members_of(session, eng)

    assert members == [
        {"id": alice, "type": "user", "name": "Ivanova Alice"},
        {"id": backend, "type": "group", "name": "Backend"},
    ]


@pytest.mark.asyncio
async def test_members_of_unknown_group(session):
    with pytest.raises(GroupNotFound):
        await group_graph.members_of(session, "missing")


@pytest.mark.asyncio
async def test_candidates_exclude_self_and_direct_children(session):
    a = await make_group(session, "A")
    b = await make_group(session, "B")
    c = await make_group(session, "C")
    root = await make_group(session, "Root")
    await group_graph.add_group_relation(session, a, b)
    await group_graph.add_group_relation(session, b, c)
    await group_graph.add_group_relation(session, root, a)

    shallow = await group_graph.descendants_excluding_ancestors_of(session, a)
    assert [g.id for g in shallow] == [c, root]

    deep = await group_graph.descendants_excluding_ancestors_of(session, a, transitive=True)
    assert [g.id for g in deep] == [c]


@pytest.mark.asyncio
async def test_candidates_search(session):
    a = await make_group(session, "Admins", description="system")
    await make_group(session, "Developers", description="Backend team")
    ops = await make_group(session, "Ops", description="backend on-call")

    found = await group_graph.descendants_excluding_ancestors_of(session, a, search="BACKEND")
    assert [g.name for g in found] == ["Developers", "Ops"]
    assert ops in [g.id for g in found]


@pytest.mark.asyncio
async def test_delete_group_cascades_edges(session):
    parent = await make_group(session, "Parent")
    g = await make_group(session, "Doomed")
    child = await make_group(session, "Child")
    alice = await make_user(session, "alice")
    bob = await make_user(session, "bob")
    await group_graph.add_membership(session, g, alice)
    await group_graph.add_membership(session, parent, bob)
    await group_graph.add_group_relation(session, parent, g)
    await group_graph.add_group_relation(session, g, child)

    await group_graph.delete_group(session, g)

    assert await repo.get_group(session, g) is None
    assert await count(session, GroupMembership, GroupMembership.group_id == g) == 0
    assert await repo.all_relations(session) == []
    assert await count(session, GroupMembership) == 1

    with pytest.raises(GroupNotFound):
        await group_graph.delete_group(session, g)


@pytest.mark.asyncio
async def test_delete_user_removes_memberships_first(session):
    g1 = await make_group(session, "G1")
    g2 = await make_group(session, "G2")
    alice = await make_user(session, "alice")
    await group_graph.add_membership(session, g1, alice)
    await group_graph.add_membership(session, g2, alice)

    await group_graph.delete_user(session, alice)

    assert await repo.get_user(session, alice) is None
    assert await count(session, GroupMembership) == 0
    with pytest.raises(PrincipalNotFound):
        await group_graph.delete_user(session, alice)


@pytest.mark.asyncio
async def test_add_and_remove_member_dispatch(session):
    g = await make_group(session, "G")
    sub = await make_group(session, "Sub")
    alice = await make_user(session, "alice")

    await group_graph.add_member(session, g, MemberType.USER, alice)
    await group_graph.add_member(session, g, MemberType.GROUP, sub)
    assert [m["type"] for m in await group_graph.members_of(session, g)] == ["user", "group"]

    assert await group_graph.remove_member(session, g, MemberType.GROUP, sub) == 1
    assert await group_graph.remove_member(session, g, MemberType.USER, alice) == 1
    assert await group_graph.members_of(session, g) == []


@pytest.mark.asyncio
async def test_list_groups_paginates_by_name(session):
    for name in ["Delta", "alpha", "Charlie", "Bravo"]:
        await make_group(session, name)

    items, total = await group_graph.list_groups(session, page=1, per_page=3)
    assert total == 4
    assert len(items) == 3

    items, total = await group_graph.list_groups(session, page=2, per_page=3)
    assert total == 4
    assert len(items) == 1

    items, total = await group_graph.list_groups(session, page=1, per_page=10, search="ALP")
    assert [g.name for g in items] == ["alpha"]
    assert total == 1
