"""
Tests for the entity store: schema-backed documents, finds, atomic array
updates and populate.
"""
import pytest

from taskboard.errors import NotFound, ValidationError
from taskboard.schema import EntityKind, new_document
from taskboard.store import SQLiteEntityStore, parse_populate

BOARD = EntityKind.BOARD
COLUMN = EntityKind.COLUMN
TASK = EntityKind.TASK
SUBTASK = EntityKind.SUBTASK


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Documents
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestNewDocument:

    def test_defaults_applied(self):
        doc = new_document(SUBTASK, {"title": "Write tests", "task": "t1"})
        assert doc["isCompleted"] is False
        assert doc["_id"]

        task = new_document(TASK, {"title": "Ship", "column": "c1"})
        assert task["subtasks"] == []
        assert task["description"] is None

    def test_missing_required_field(self):
        with pytest.raises(ValidationError, match="column"):
            new_document(TASK, {"title": "Ship"})

    def test_empty_required_text(self):
        with pytest.raises(ValidationError, match="must not be empty"):
            new_document(BOARD, {"name": "   "})

    def test_unknown_field(self):
        with pytest.raises(ValidationError, match="Unknown field"):
            new_document(BOARD, {"name": "B", "owner": "me"})

    def test_boolean_type_enforced(self):
        with pytest.raises(ValidationError, match="boolean"):
            new_document(SUBTASK, {"title": "S", "task": "t1", "isCompleted": "yes"})

    def test_explicit_id_kept(self):
        doc = new_document(BOARD, {"name": "B"}, entity_id="abc")
        assert doc["_id"] == "abc"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# CRUD
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCrud:

    def test_create_and_load(self, store):
        board = store.create(BOARD, {"name": "Roadmap"})
        loaded = store.load(BOARD, board["_id"])
        assert loaded == {"_id": board["_id"], "name": "Roadmap", "columns": []}

    def test_load_missing_raises(self, store):
        with pytest.raises(NotFound) as exc:
            store.load(BOARD, "nope")
        assert exc.value.entity_id == "nope"
        assert exc.value.kind == "NotFound"

    def test_kinds_are_separate(self, store):
        board = store.create(BOARD, {"name": "B"})
        with pytest.raises(NotFound):
            store.load(COLUMN, board["_id"])

    def test_update_fields(self, store):
        board = store.create(BOARD, {"name": "Old"})
        updated = store.update_fields(BOARD, board["_id"], {"name": "New"})
        assert updated["name"] == "New"
        assert store.load(BOARD, board["_id"])["name"] == "New"

    def test_update_rejects_invalid(self, store):
        board = store.create(BOARD, {"name": "B"})
        with pytest.raises(ValidationError):
            store.update_fields(BOARD, board["_id"], {"name": ""})
        assert store.load(BOARD, board["_id"])["name"] == "B"

    def test_update_missing_raises(self, store):
        with pytest.raises(NotFound):
            store.update_fields(BOARD, "nope", {"name": "X"})

    def test_delete_returns_previous_contents(self, store):
        board = store.create(BOARD, {"name": "B"})
        store.add_to_array(BOARD, board["_id"], "columns", "c1")

        deleted = store.delete(BOARD, board["_id"])
        assert deleted["columns"] == ["c1"]
        with pytest.raises(NotFound):
            store.load(BOARD, board["_id"])

    def test_delete_missing_raises(self, store):
        with pytest.raises(NotFound):
            store.delete(BOARD, "nope")

    def test_persists_across_instances(self, tmp_path):
        db_path = str(tmp_path / "persist.db")
        board = SQLiteEntityStore(db_path).create(BOARD, {"name": "Kept"})
        assert SQLiteEntityStore(db_path).load(BOARD, board["_id"])["name"] == "Kept"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Find
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFind:

    def test_find_all_in_insertion_order(self, store):
        names = ["A", "B", "C"]
        for name in names:
            store.create(BOARD, {"name": name})
        assert [b["name"] for b in store.find(BOARD)] == names

    def test_find_by_equality(self, store):
        store.create(COLUMN, {"name": "Todo", "board": "b1"})
        store.create(COLUMN, {"name": "Done", "board": "b2"})
        found = store.find(COLUMN, {"board": "b1"})
        assert [c["name"] for c in found] == ["Todo"]

    def test_find_by_membership(self, store):
        store.create(TASK, {"title": "T1", "column": "c1"})
        store.create(TASK, {"title": "T2", "column": "c2"})
        store.create(TASK, {"title": "T3", "column": "c3"})
        found = store.find(TASK, {"column": {"$in": ["c1", "c3"]}})
        assert {t["title"] for t in found} == {"T1", "T3"}

    def test_find_empty_membership(self, store):
        store.create(TASK, {"title": "T1", "column": "c1"})
        assert store.find(TASK, {"column": {"$in": []}}) == []

    def test_find_by_boolean(self, store):
        store.create(SUBTASK, {"title": "open", "task": "t1"})
        store.create(SUBTASK, {"title": "done", "task": "t1", "isCompleted": True})
        assert [s["title"] for s in store.find(SUBTASK, {"isCompleted": True})] == ["done"]
        assert [s["title"] for s in store.find(SUBTASK, {"isCompleted": False})] == ["open"]

    def test_find_by_id(self, store):
        board = store.create(BOARD, {"name": "B"})
        assert store.find(BOARD, {"_id": board["_id"]}) == [board]
        assert store.find(BOARD, {"_id": "nope"}) == []

    def test_large_membership_batched(self, store, monkeypatch):
        monkeypatch.setattr("taskboard.store.IN_BATCH_SIZE", 2)
        boards = [store.create(BOARD, {"name": str(i)}) for i in range(5)]
        ids = [b["_id"] for b in reversed(boards)] + [boards[0]["_id"], "missing"]

        found = store.find(BOARD, {"_id": {"$in": ids}})

        assert [b["name"] for b in found] == ["0", "1", "2", "3", "4"]

    def test_batched_with_second_membership(self, store, monkeypatch):
        monkeypatch.setattr("taskboard.store.IN_BATCH_SIZE", 2)
        tasks = [store.create(TASK, {"title": f"T{i}", "column": f"c{i % 2}"}) for i in range(6)]

        found = store.find(TASK, {"_id": {"$in": [t["_id"] for t in tasks]}, "column": {"$in": ["c0"]}})

        assert [t["title"] for t in found] == ["T0", "T2", "T4"]

    def test_find_unknown_field_rejected(self, store):
        with pytest.raises(ValidationError):
            store.find(BOARD, {"owner": "me"})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Array fields
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestArrayFields:

    def test_add_appends_once(self, store):
        board = store.create(BOARD, {"name": "B"})
        store.add_to_array(BOARD, board["_id"], "columns", "c1")
        store.add_to_array(BOARD, board["_id"], "columns", "c2")
        store.add_to_array(BOARD, board["_id"], "columns", "c1")
        assert store.load(BOARD, board["_id"])["columns"] == ["c1", "c2"]

    def test_add_at_position(self, store):
        board = store.create(BOARD, {"name": "B", "columns": ["c1", "c3"]})
        store.add_to_array(BOARD, board["_id"], "columns", "c2", position=1)
        assert store.load(BOARD, board["_id"])["columns"] == ["c1", "c2", "c3"]

    def test_add_to_missing_document(self, store):
        with pytest.raises(NotFound):
            store.add_to_array(BOARD, "nope", "columns", "c1")

    def test_add_to_scalar_field_rejected(self, store):
        board = store.create(BOARD, {"name": "B"})
        with pytest.raises(ValidationError):
            store.add_to_array(BOARD, board["_id"], "name", "x")

    def test_remove_returns_index(self, store):
        board = store.create(BOARD, {"name": "B", "columns": ["c1", "c2", "c3"]})
        assert store.remove_from_array(BOARD, board["_id"], "columns", "c2") == 1
        assert store.load(BOARD, board["_id"])["columns"] == ["c1", "c3"]

    def test_remove_absent_is_noop(self, store):
        board = store.create(BOARD, {"name": "B", "columns": ["c1"]})
        assert store.remove_from_array(BOARD, board["_id"], "columns", "zz") is None
        assert store.load(BOARD, board["_id"])["columns"] == ["c1"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Populate
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPopulate:

    def test_parse_dotted_path(self):
        assert parse_populate("columns.tasks.subtasks") == {"columns": {"tasks": {"subtasks": {}}}}

    def test_parse_space_separated(self):
        assert parse_populate("column subtasks") == {"column": {}, "subtasks": {}}

    def test_parse_merges_paths(self):
        tree = parse_populate(["columns.tasks", "columns.board"])
        assert tree == {"columns": {"tasks": {}, "board": {}}}

    def test_parse_empty(self):
        assert parse_populate(None) == {}

    def _tree(self, store):
        board = store.create(BOARD, {"name": "B"})
        column = store.create(COLUMN, {"name": "Todo", "board": board["_id"]})
        store.add_to_array(BOARD, board["_id"], "columns", column["_id"])
        task = store.create(TASK, {"title": "T", "column": column["_id"]})
        store.add_to_array(COLUMN, column["_id"], "tasks", task["_id"])
        subtask = store.create(SUBTASK, {"title": "S", "task": task["_id"]})
        store.add_to_array(TASK, task["_id"], "subtasks", subtask["_id"])
        return board, column, task, subtask

    def test_full_depth(self, store):
        board, column, task, subtask = self._tree(store)
        doc = store.get(BOARD, board["_id"], populate="columns.tasks.subtasks")
        assert doc["columns"][0]["name"] == "Todo"
        assert doc["columns"][0]["tasks"][0]["title"] == "T"
        assert doc["columns"][0]["tasks"][0]["subtasks"][0] == store.load(SUBTASK, subtask["_id"])

    def test_scalar_reference(self, store):
        board, column, task, subtask = self._tree(store)
        doc = store.get(TASK, task["_id"], populate="column subtasks")
        assert doc["column"]["_id"] == column["_id"]
        assert doc["subtasks"][0]["title"] == "S"

    def test_preserves_list_order(self, store):
        board = store.create(BOARD, {"name": "B"})
        ids = []
        for name in ["A", "B", "C"]:
            column = store.create(COLUMN, {"name": name, "board": board["_id"]})
            ids.append(column["_id"])
        store.update_fields(BOARD, board["_id"], {"columns": list(reversed(ids))})

        doc = store.get(BOARD, board["_id"], populate="columns")
        assert [c["name"] for c in doc["columns"]] == ["C", "B", "A"]

    def test_dangling_ids_dropped(self, store):
        board, column, task, subtask = self._tree(store)
        store.add_to_array(BOARD, board["_id"], "columns", "ghost")
        doc = store.get(BOARD, board["_id"], populate="columns")
        assert [c["_id"] for c in doc["columns"]] == [column["_id"]]

    def test_missing_scalar_becomes_none(self, store):
        task = store.create(TASK, {"title": "T", "column": "gone"})
        assert store.get(TASK, task["_id"], populate="column")["column"] is None

    def test_non_reference_field_rejected(self, store):
        board = store.create(BOARD, {"name": "B"})
        with pytest.raises(ValidationError):
            store.get(BOARD, board["_id"], populate="name")

    def test_no_spec_returns_ids(self, store):
        board, column, task, subtask = self._tree(store)
        assert store.get(BOARD, board["_id"])["columns"] == [column["_id"]]
