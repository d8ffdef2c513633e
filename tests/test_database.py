# tests/test_database.py

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from database import DuplicateUsernameError, TaskWriteResult, UserStore


def updated(matched: int) -> SimpleNamespace:
    return SimpleNamespace(matched_count=matched, modified_count=matched)


@pytest.fixture()
def collection() -> MagicMock:
    coll = MagicMock()
    coll.name = "users"
    coll.find_one = AsyncMock(return_value=None)
    coll.insert_one = AsyncMock()
    coll.update_one = AsyncMock(return_value=updated(1))
    coll.count_documents = AsyncMock(return_value=1)
    coll.create_index = AsyncMock()
    return coll


@pytest.fixture()
def store(collection) -> UserStore:
    return UserStore(collection)


async def test_ensure_indexes_is_unique_on_username(store, collection):
    await store.ensure_indexes()
    collection.create_index.assert_awaited_once_with([("username", 1)], unique=True)


async def test_create_user_starts_with_empty_task_list(store, collection):
    await store.create_user("al", "hash")
    collection.insert_one.assert_awaited_once_with({"username": "al", "password": "hash", "taskList": []})


async def test_create_user_maps_duplicate_key(store, collection):
    collection.insert_one.side_effect = DuplicateKeyError("E11000")
    with pytest.raises(DuplicateUsernameError):
        await store.create_user("al", "hash")


async def test_rename_maps_duplicate_key(store, collection):
    collection.update_one.side_effect = DuplicateKeyError("E11000")
    with pytest.raises(DuplicateUsernameError):
        await store.rename_user("al", "bo")


async def test_rename_missing_user(store, collection):
    collection.update_one.return_value = updated(0)
    assert await store.rename_user("al", "bo") is False


async def test_list_tasks_defaults_to_empty(store, collection):
    collection.find_one.return_value = {"username": "al"}
    assert await store.list_tasks("al") == []

    collection.find_one.return_value = None
    assert await store.list_tasks("al") is None


async def test_add_task_is_a_conditional_push(store, collection):
    task = {"id": "t1", "taskName": "a"}
    assert await store.add_task("al", task) is TaskWriteResult.OK
    collection.update_one.assert_awaited_once_with(
        {"username": "al", "taskList.id": {"$ne": "t1"}},
        {"$push": {"taskList": task}},
    )


async def test_add_task_reports_duplicate_or_missing_user(store, collection):
    collection.update_one.return_value = updated(0)

    collection.count_documents.return_value = 1
    assert await store.add_task("al", {"id": "t1"}) is TaskWriteResult.DUPLICATE_TASK

    collection.count_documents.return_value = 0
    assert await store.add_task("al", {"id": "t1"}) is TaskWriteResult.USER_NOT_FOUND


async def test_replace_task_is_a_single_pipeline_update(store, collection):
    task = {"id": "t1", "taskName": "$danger"}
    assert await store.replace_task("al", "t1", task) is True

    (query, pipeline), _ = collection.update_one.await_args
    assert query == {"username": "al"}
    assert isinstance(pipeline, list) and len(pipeline) == 1
    concat = pipeline[0]["$set"]["taskList"]["$concatArrays"]
    assert concat[0]["$filter"]["cond"] == {"$ne": ["$$this.id", "t1"]}
    assert concat[1] == [{"$literal": task}]


async def test_delete_task_pulls_by_id(store, collection):
    assert await store.delete_task("al", "t1") is True
    collection.update_one.assert_awaited_once_with(
        {"username": "al"}, {"$pull": {"taskList": {"id": "t1"}}}
    )

    collection.update_one.return_value = updated(0)
    assert await store.delete_task("ghost", "t1") is False


async def test_ping_without_client_is_noop(store):
    await store.ping()
    store.close()
