"""Tests for group and deployment history persistence."""

from datetime import datetime, timezone

import pytest

from api.src.models.schemas import GroupIn
from api.src.services.errors import GroupRevisionConflictError, ValidationFailedError
from api.src.services.store import DeploymentHistory, GroupStore

@pytest.mark.asyncio
async def test_groups_round_trip_in_order(db_session):
    store = GroupStore(db_session)

    await store.replace_all([
        GroupIn(id=7, name="Search", description="search stack", projectIds=[201]),
        GroupIn(id=3, name="Checkout", projectIds=[101, 102, 101]),
    ])

    groups = await store.list_groups()
    assert [(g.id, g.name) for g in groups] == [(7, "Search"), (3, "Checkout")]
    assert groups[1].project_ids == [101, 102]
    assert groups[0].model_dump(by_alias=True) == {
        "id": 7,
        "name": "Search",
        "description": "search stack",
        "projectIds": [201],
    }

@pytest.mark.asyncio
async def test_replace_removes_groups_not_in_the_document(db_session):
    store = GroupStore(db_session)
    await store.replace_all([GroupIn(id=1, name="A"), GroupIn(id=2, name="B")])

    await store.replace_all([GroupIn(id=2, name="B2", projectIds=[5])])

    groups = await store.list_groups()
    assert [(g.id, g.name, g.project_ids) for g in groups] == [(2, "B2", [5])]
    assert await store.get_group(1) is None

@pytest.mark.asyncio
async def test_revision_increments_on_every_save(db_session):
    store = GroupStore(db_session)
    assert await store.revision() == 0

    assert await store.replace_all([GroupIn(id=1, name="A")]) == 1
    assert await store.replace_all([GroupIn(id=1, name="A")], expected_revision=1) == 2

@pytest.mark.asyncio
async def test_stale_revision_is_rejected(db_session):
    store = GroupStore(db_session)
    await store.replace_all([GroupIn(id=1, name="A")])
    await store.replace_all([GroupIn(id=1, name="B")])

    with pytest.raises(GroupRevisionConflictError) as excinfo:
        await store.replace_all([GroupIn(id=1, name="C")], expected_revision=1)

    assert excinfo.value.current == 2
    assert (await store.get_group(1)).name == "B"

@pytest.mark.asyncio
async def test_duplicate_group_ids_are_rejected(db_session):
    with pytest.raises(ValidationFailedError):
        await GroupStore(db_session).replace_all([GroupIn(id=1, name="A"), GroupIn(id=1, name="B")])

def test_blank_group_name_is_rejected():
    with pytest.raises(ValueError):
        GroupIn(id=1, name="  ")

@pytest.mark.asyncio
async def test_history_is_newest_first(db_session):
    history = DeploymentHistory(db_session)
    started = datetime(2024, 5, 14, 9, 30, tzinfo=timezone.utc)

    first = await history.append("Checkout", "develop", started)
    second = await history.append("Search", "main", started, {"QA": "running"})

    records = await history.list_records()
    assert [r.id for r in records] == [second.id, first.id]
    assert records[0].environments == {"QA": "running"}
    assert records[1].environments["Production"] == "idle"
    assert [r.id for r in await history.list_records(limit=1)] == [second.id]
