import base64
import json
import sys

import pytest
from botocore.exceptions import ClientError

from fakes import FakeTasksTable
from fakes import condition_failed

if "lambda" not in sys.path:
    sys.path.insert(0, "lambda")

import task_store  # noqa: E402
from task_store import InvalidCursorError  # noqa: E402
from task_store import TaskStore  # noqa: E402


def _item(task_id: str, owner_id: str, created_at: str, **extra) -> dict:
    item = {
        "id": task_id,
        "ownerId": owner_id,
        "title": f"task {task_id}",
        "description": "",
        "priority": "medium",
        "status": "pending",
        "dueDate": None,
        "category": "",
        "createdAt": created_at,
        "updatedAt": created_at,
    }
    item.update(extra)
    return item


def _store(*items, page_size=None) -> tuple[TaskStore, FakeTasksTable]:
    table = FakeTasksTable(page_size=page_size)
    for item in items:
        table.put_item(Item=item)
    table.calls.clear()
    return TaskStore(table, owner_index="owner-index"), table


def test_cursor_roundtrip_is_owner_bound():
    key = {"id": "t1", "ownerId": "alice", "createdAt": "2024-01-01T00:00:00.000000Z"}
    cursor = task_store.encode_cursor(key)
    assert cursor and "=" not in cursor
    assert task_store.decode_cursor(cursor, owner_id="alice") == key
    with pytest.raises(InvalidCursorError):
        task_store.decode_cursor(cursor, owner_id="bob")


def test_empty_cursor_decodes_to_none():
    assert task_store.encode_cursor(None) is None
    assert task_store.encode_cursor({}) is None
    assert task_store.decode_cursor(None, owner_id="alice") is None
    assert task_store.decode_cursor("  ", owner_id="alice") is None


@pytest.mark.parametrize(
    "cursor",
    [
        "%%%not-base64%%%",
        base64.urlsafe_b64encode(b"not json").decode("ascii"),
        base64.urlsafe_b64encode(b"[1,2]").decode("ascii"),
        base64.urlsafe_b64encode(b"{}").decode("ascii"),
        base64.urlsafe_b64encode(json.dumps({"ownerId": "alice", "n": 1}).encode()).decode("ascii"),
    ],
)
def test_malformed_cursor_is_rejected(cursor):
    with pytest.raises(InvalidCursorError):
        task_store.decode_cursor(cursor, owner_id="alice")


def test_invalid_cursor_is_a_value_error():
    assert issubclass(InvalidCursorError, ValueError)


def test_update_owned_builds_single_conditional_request():
    store, table = _store(_item("t1", "alice", "2024-01-01T00:00:00.000000Z"))
    out = store.update_owned("t1", "alice", {"title": "new", "status": "completed"}, updated_at="2024-01-02T00:00:00.000000Z")

    assert out["title"] == "new"
    assert out["status"] == "completed"
    assert out["updatedAt"] == "2024-01-02T00:00:00.000000Z"
    assert out["createdAt"] == "2024-01-01T00:00:00.000000Z"
    [(op, kwargs)] = table.calls
    assert op == "update_item"
    assert kwargs["UpdateExpression"] == "SET #f0 = :v0, #f1 = :v1, #updatedAt = :updatedAt"
    assert kwargs["ExpressionAttributeNames"]["#f0"] == "status"
    assert kwargs["ExpressionAttributeNames"]["#f1"] == "title"
    assert kwargs["ExpressionAttributeValues"][":ownerId"] == "alice"


def test_update_owned_returns_none_for_other_owner_and_missing():
    store, table = _store(_item("t1", "alice", "2024-01-01T00:00:00.000000Z"))
    assert store.update_owned("t1", "bob", {"title": "x"}, updated_at="2024-01-02T00:00:00.000000Z") is None
    assert store.update_owned("nope", "alice", {"title": "x"}, updated_at="2024-01-02T00:00:00.000000Z") is None
    assert table.items["t1"]["title"] == "task t1"


def test_update_owned_rejects_empty_and_immutable_changes():
    store, table = _store(_item("t1", "alice", "2024-01-01T00:00:00.000000Z"))
    with pytest.raises(ValueError):
        store.update_owned("t1", "alice", {}, updated_at="x")
    for field in ("id", "ownerId", "createdAt", "updatedAt"):
        with pytest.raises(ValueError):
            store.update_owned("t1", "alice", {field: "x"}, updated_at="x")
    assert table.calls == []


def test_update_owned_propagates_other_client_errors():
    class Throttled(FakeTasksTable):
        def update_item(self, **kwargs):
            raise ClientError({"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow"}}, "UpdateItem")

    store = TaskStore(Throttled())
    with pytest.raises(ClientError):
        store.update_owned("t1", "alice", {"title": "x"}, updated_at="x")


def test_delete_owned_returns_old_item_once():
    store, table = _store(_item("t1", "alice", "2024-01-01T00:00:00.000000Z"))
    assert store.delete_owned("t1", "bob") is None
    assert "t1" in table.items
    old = store.delete_owned("t1", "alice")
    assert old["id"] == "t1"
    assert store.delete_owned("t1", "alice") is None
    assert store.get("t1") is None


def test_query_owner_is_newest_first_and_paginates():
    store, table = _store(
        _item("t1", "alice", "2024-01-01T00:00:00.000000Z"),
        _item("t2", "alice", "2024-01-02T00:00:00.000000Z"),
        _item("t3", "alice", "2024-01-03T00:00:00.000000Z"),
        _item("b1", "bob", "2024-01-04T00:00:00.000000Z"),
    )
    items, cursor = store.query_owner("alice", limit=2)
    assert [i["id"] for i in items] == ["t3", "t2"]
    assert cursor
    assert table.calls[-1][1]["IndexName"] == "owner-index"

    items, cursor = store.query_owner("alice", limit=2, cursor=cursor)
    assert [i["id"] for i in items] == ["t1"]
    assert cursor is None


def test_iter_owner_follows_pages_and_projects():
    store, table = _store(
        *[_item(f"t{i}", "alice", f"2024-01-0{i}T00:00:00.000000Z", priority="high") for i in range(1, 6)],
        _item("b1", "bob", "2024-01-01T00:00:00.000000Z"),
        page_size=2,
    )
    items = list(store.iter_owner("alice", projection=("status", "priority")))
    assert len(items) == 5
    assert all(set(i) == {"status", "priority"} for i in items)
    assert len([c for c in table.calls if c[0] == "query"]) == 3


def test_is_condition_failure():
    err = ClientError({"Error": {"Code": "ConditionalCheckFailedException", "Message": "x"}}, "PutItem")
    assert task_store.is_condition_failure(err)
    assert not task_store.is_condition_failure(ValueError("x"))


def test_update_owned_refuses_stamp_not_newer_than_stored():
    store, table = _store(_item("t1", "alice", "2024-01-01T00:00:00.000000Z", updatedAt="2024-03-01T00:00:00.000000Z"))
    with pytest.raises(task_store.StaleTimestampError) as exc:
        store.update_owned("t1", "alice", {"title": "late"}, updated_at="2024-02-01T00:00:00.000000Z")
    assert exc.value.stored_updated_at == "2024-03-01T00:00:00.000000Z"
    assert table.items["t1"]["title"] == "task t1"
    with pytest.raises(task_store.StaleTimestampError):
        store.update_owned("t1", "alice", {"title": "tie"}, updated_at="2024-03-01T00:00:00.000000Z")


def test_update_owned_stale_stamp_for_other_owner_is_not_found():
    store, table = _store(_item("t1", "alice", "2024-01-01T00:00:00.000000Z", updatedAt="2024-03-01T00:00:00.000000Z"))
    assert store.update_owned("t1", "bob", {"title": "x"}, updated_at="2024-02-01T00:00:00.000000Z") is None
    assert table.items["t1"]["title"] == "task t1"


def test_condition_failure_item_is_deserialized():
    err = condition_failed("UpdateItem", {"id": "t1", "ownerId": "alice", "updatedAt": "2024-01-01T00:00:00.000000Z"})
    assert task_store._condition_failure_item(err) == {
        "id": "t1",
        "ownerId": "alice",
        "updatedAt": "2024-01-01T00:00:00.000000Z",
    }
    assert task_store._condition_failure_item(condition_failed("UpdateItem")) == {}


def test_timeout_tables_clamp_and_cache(monkeypatch):
    built = []

    def fake_build(table_name, *, region=None, timeout_seconds=5, max_attempts=3):
        built.append((table_name, region, timeout_seconds, max_attempts))
        return object()

    monkeypatch.setattr(task_store, "build_tasks_table", fake_build)
    tables = task_store.TimeoutTables("tasks", region="us-east-2", max_timeout_seconds=4, max_attempts=2)

    assert tables.seconds_for(None) == 4
    assert tables.seconds_for(0.01) == 1
    assert tables.seconds_for(2.2) == 3
    assert tables.seconds_for(60) == 4

    assert tables(0.5) is tables(0.9)
    assert tables(None) is tables(10)
    assert tables(2) is not tables(None)
    assert built == [("tasks", "us-east-2", 1, 2), ("tasks", "us-east-2", 4, 2), ("tasks", "us-east-2", 2, 2)]


def test_store_uses_timeout_bound_table_when_given():
    default = FakeTasksTable()
    bounded = FakeTasksTable()
    bounded.put_item(Item=_item("t1", "alice", "2024-01-01T00:00:00.000000Z"))
    seen = []

    def tables(timeout):
        seen.append(timeout)
        return bounded

    store = TaskStore(default, tables=tables)
    assert store.get("t1", timeout=1.5)["id"] == "t1"
    items, _ = store.query_owner("alice", limit=5, timeout=0.25)
    assert [i["id"] for i in items] == ["t1"]
    assert store.get("t1") is None
    assert seen == [1.5, 0.25]
    assert default.calls == [("get_item", {"Key": {"id": "t1"}})]
