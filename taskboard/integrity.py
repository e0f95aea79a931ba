"""
Referential integrity engine.

Keeps both ends of every parent/child edge in sync:

  board.columns  ↔ column.board
  column.tasks   ↔ task.column
  task.subtasks  ↔ subtask.task

Every mutation is a Saga of single-document store calls. Descendants are
resolved top-down before the first write, then deleted bottom-up
(subtasks, tasks, columns, board) so no level is orphaned mid-cascade.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Dict, List, Optional

from .saga import Saga
from .schema import EntityKind, new_document, validate_fields
from .store import Document, EntityStore

logger = logging.getLogger(__name__)

BOARD = EntityKind.BOARD
COLUMN = EntityKind.COLUMN
TASK = EntityKind.TASK
SUBTASK = EntityKind.SUBTASK

# (parent kind, parent list field, child kind, child back-reference field)
EDGES = [
    (BOARD, "columns", COLUMN, "board"),
    (COLUMN, "tasks", TASK, "column"),
    (TASK, "subtasks", SUBTASK, "task"),
]


def provided_fields(args: Dict[str, Any], current: Optional[Document] = None) -> Dict[str, Any]:
    """
    Fields to apply from a partial update.

    Arguments that were not supplied (None) are skipped. With `current`,
    values equal to the stored ones are skipped too (diff-then-apply).
    """
    fields = {name: value for name, value in args.items() if value is not None}
    if current is not None:
        fields = {name: value for name, value in fields.items() if current.get(name) != value}
    return fields


def serialized(method):
    """Run an engine mutation under the engine lock."""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class IssueType(Enum):
    """Kinds of broken parent/child edges."""
    DANGLING = "dangling"        # Parent lists an id that does not exist
    MISMATCHED = "mismatched"    # Parent lists a child that points elsewhere
    UNLISTED = "unlisted"        # Child points at a parent that does not list it
    ORPHAN = "orphan"            # Child points at a parent that does not exist
    DUPLICATE = "duplicate"      # Parent lists the same id more than once


@dataclass
class IntegrityIssue:
    issue: IssueType
    kind: EntityKind
    entity_id: str
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue": self.issue.value,
            "kind": self.kind.value,
            "entity_id": self.entity_id,
            "detail": self.detail,
        }


class IntegrityEngine:
    """Cascading creates, moves and deletes over an EntityStore."""

    def __init__(self, store: EntityStore, rollback_on_failure: bool = True):
        self.store = store
        self.rollback_on_failure = rollback_on_failure
        self._lock = threading.RLock()

    def _saga(self, name: str) -> Saga:
        return Saga(name, rollback_on_failure=self.rollback_on_failure)

    # ──────────────────────────────────────────
    # Edge maintenance
    # ──────────────────────────────────────────

    def link_child(
        self, parent_kind: EntityKind, parent_id: str, field: str, child_id: str,
        position: Optional[int] = None,
    ) -> Document:
        """Add child_id to the parent's list (no duplicates). Raises NotFound for a missing parent."""
        return self.store.add_to_array(parent_kind, parent_id, field, child_id, position=position)

    def unlink_child(self, parent_kind: EntityKind, parent_id: str, field: str, child_id: str) -> Optional[int]:
        """Remove child_id from the parent's list. Returns its former index, or None."""
        matches = self.store.find(parent_kind, {"_id": parent_id})
        if not matches:
            logger.warning(f"unlink {child_id}: {parent_kind.value} {parent_id} is gone")
            return None
        return self.store.remove_from_array(parent_kind, parent_id, field, child_id)

    def _add_link(self, saga: Saga, parent_kind: EntityKind, parent_id: str, field: str, child_id: str):
        saga.add(
            f"link {child_id} into {parent_kind.value}.{field}",
            lambda: self.link_child(parent_kind, parent_id, field, child_id),
            lambda _: self.unlink_child(parent_kind, parent_id, field, child_id),
        )

    def _add_unlink(self, saga: Saga, parent_kind: EntityKind, parent_id: str, field: str, child_id: str):
        def relink(index):
            if index is not None:
                self.link_child(parent_kind, parent_id, field, child_id, position=index)

        saga.add(
            f"unlink {child_id} from {parent_kind.value}.{field}",
            lambda: self.unlink_child(parent_kind, parent_id, field, child_id),
            relink,
        )

    def _add_create(self, saga: Saga, kind: EntityKind, doc: Document):
        fields = {k: v for k, v in doc.items() if k != "_id"}
        saga.add(
            f"create {kind.value} {doc['_id']}",
            lambda: self.store.create(kind, fields, entity_id=doc["_id"]),
            lambda _: self.store.delete(kind, doc["_id"]),
        )

    def _add_delete(self, saga: Saga, kind: EntityKind, doc: Document):
        fields = {k: v for k, v in doc.items() if k != "_id"}
        saga.add(
            f"delete {kind.value} {doc['_id']}",
            lambda: self.store.delete(kind, doc["_id"]),
            lambda _: self.store.create(kind, fields, entity_id=doc["_id"]),
        )

    # ──────────────────────────────────────────
    # Descendant resolution
    # ──────────────────────────────────────────

    def _children(
        self, parents: List[Document], parent_kind: EntityKind, list_field: str,
        child_kind: EntityKind, back_ref: str,
    ) -> List[Document]:
        """
        Children found by back-reference, plus listed ones that still exist
        and whose own parent is gone. A listed child owned by another live
        parent is left alone.
        """
        parent_ids = [p["_id"] for p in parents]
        children = self.store.find(child_kind, {back_ref: {"$in": parent_ids}})
        seen = {c["_id"] for c in children}

        listed = [cid for p in parents for cid in p.get(list_field) or [] if cid not in seen]
        if not listed:
            return children

        owners = {}
        for child in self.store.find(child_kind, {"_id": {"$in": listed}}):
            owner = child.get(back_ref)
            if owner not in owners:
                owners[owner] = bool(owner) and bool(self.store.find(parent_kind, {"_id": owner}))
            if owners[owner]:
                logger.warning(f"{child_kind.value} {child['_id']} is listed here but belongs to {owner}; skipped")
                continue
            children.append(child)
        return children

    def _columns_of(self, boards: List[Document]) -> List[Document]:
        return self._children(boards, BOARD, "columns", COLUMN, "board")

    def _tasks_of(self, columns: List[Document]) -> List[Document]:
        return self._children(columns, COLUMN, "tasks", TASK, "column")

    def _subtasks_of(self, tasks: List[Document]) -> List[Document]:
        return self._children(tasks, TASK, "subtasks", SUBTASK, "task")

    # ──────────────────────────────────────────
    # Boards
    # ──────────────────────────────────────────

    @serialized
    def create_board(self, name: str) -> Document:
        board = self.store.create(BOARD, {"name": name})
        logger.info(f"Created board {board['_id']}")
        return board

    @serialized
    def update_board(self, board_id: str, name: str) -> Document:
        board = self.store.update_fields(BOARD, board_id, {"name": name})
        logger.info(f"Renamed board {board_id}")
        return board

    @serialized
    def delete_board(self, board_id: str) -> Document:
        """Delete a board with all its columns, tasks and subtasks."""
        board = self.store.load(BOARD, board_id)
        columns = self._columns_of([board])
        tasks = self._tasks_of(columns) if columns else []
        subtasks = self._subtasks_of(tasks) if tasks else []

        saga = self._saga(f"deleteBoard {board_id}")
        for subtask in subtasks:
            self._add_delete(saga, SUBTASK, subtask)
        for task in tasks:
            self._add_delete(saga, TASK, task)
        for column in columns:
            self._add_delete(saga, COLUMN, column)
        self._add_delete(saga, BOARD, board)
        saga.run()

        logger.info(
            f"Deleted board {board_id} "
            f"({len(columns)} columns, {len(tasks)} tasks, {len(subtasks)} subtasks)"
        )
        return board

    # ──────────────────────────────────────────
    # Columns
    # ──────────────────────────────────────────

    @serialized
    def create_column(self, name: str, board_id: str) -> Document:
        column = new_document(COLUMN, {"name": name, "board": board_id})
        self.store.load(BOARD, board_id)

        saga = self._saga(f"createColumn on {board_id}")
        self._add_create(saga, COLUMN, column)
        self._add_link(saga, BOARD, board_id, "columns", column["_id"])
        created = saga.run()[0]

        logger.info(f"Created column {column['_id']} on board {board_id}")
        return created

    @serialized
    def update_column(self, column_id: str, name: str) -> Document:
        column = self.store.update_fields(COLUMN, column_id, {"name": name})
        logger.info(f"Renamed column {column_id}")
        return column

    @serialized
    def delete_column(self, column_id: str) -> Document:
        """Delete a column with its tasks and their subtasks, and unlink it from its board."""
        column = self.store.load(COLUMN, column_id)
        tasks = self._tasks_of([column])
        subtasks = self._subtasks_of(tasks) if tasks else []

        saga = self._saga(f"deleteColumn {column_id}")
        for subtask in subtasks:
            self._add_delete(saga, SUBTASK, subtask)
        for task in tasks:
            self._add_delete(saga, TASK, task)
        self._add_unlink(saga, BOARD, column["board"], "columns", column_id)
        self._add_delete(saga, COLUMN, column)
        saga.run()

        logger.info(f"Deleted column {column_id} ({len(tasks)} tasks, {len(subtasks)} subtasks)")
        return column

    # ──────────────────────────────────────────
    # Tasks
    # ──────────────────────────────────────────

    @serialized
    def create_task(
        self, title: str, description: Optional[str], column_id: str,
        subtask_titles: Optional[List[str]] = None,
    ) -> Document:
        """
        Create a task in a column together with its subtasks.

        The subtask list is written to the task in one update once every
        subtask exists, so readers never see a partial list.
        """
        task = new_document(TASK, {"title": title, "description": description, "column": column_id})
        subtasks = [
            new_document(SUBTASK, {"title": subtask_title, "task": task["_id"]})
            for subtask_title in subtask_titles or []
        ]
        self.store.load(COLUMN, column_id)

        saga = self._saga(f"createTask in {column_id}")
        self._add_create(saga, TASK, task)
        self._add_link(saga, COLUMN, column_id, "tasks", task["_id"])
        for subtask in subtasks:
            self._add_create(saga, SUBTASK, subtask)
        if subtasks:
            subtask_ids = [s["_id"] for s in subtasks]
            saga.add(
                f"attach {len(subtask_ids)} subtasks",
                lambda: self.store.update_fields(TASK, task["_id"], {"subtasks": subtask_ids}),
            )
        saga.run()

        logger.info(f"Created task {task['_id']} in column {column_id} with {len(subtasks)} subtasks")
        return self.store.load(TASK, task["_id"])

    @serialized
    def update_task(
        self, task_id: str, title: Optional[str] = None, description: Optional[str] = None,
        column_id: Optional[str] = None,
    ) -> Document:
        """
        Partial update. Supplied values equal to the stored ones are skipped;
        a new column moves the task between the two columns' task lists.
        """
        task = self.store.load(TASK, task_id)
        changes = provided_fields(
            {"title": title, "description": description, "column": column_id},
            current=task,
        )
        if not changes:
            return task
        validate_fields(TASK, changes)

        new_column = changes.get("column")
        if new_column:
            self.store.load(COLUMN, new_column)

        saga = self._saga(f"updateTask {task_id}")
        if new_column:
            self._add_unlink(saga, COLUMN, task["column"], "tasks", task_id)
            self._add_link(saga, COLUMN, new_column, "tasks", task_id)
        previous = {name: task.get(name) for name in changes}
        saga.add(
            f"set {', '.join(sorted(changes))}",
            lambda: self.store.update_fields(TASK, task_id, changes),
            lambda _: self.store.update_fields(TASK, task_id, previous),
        )
        updated = saga.run()[-1]

        if new_column:
            logger.info(f"Moved task {task_id} from {task['column']} to {new_column}")
        else:
            logger.info(f"Updated task {task_id}")
        return updated

    @serialized
    def delete_task(self, task_id: str) -> Document:
        """Delete a task with its subtasks and unlink it from its column."""
        task = self.store.load(TASK, task_id)
        subtasks = self._subtasks_of([task])

        saga = self._saga(f"deleteTask {task_id}")
        for subtask in subtasks:
            self._add_delete(saga, SUBTASK, subtask)
        self._add_unlink(saga, COLUMN, task["column"], "tasks", task_id)
        self._add_delete(saga, TASK, task)
        saga.run()

        logger.info(f"Deleted task {task_id} ({len(subtasks)} subtasks)")
        return task

    # ──────────────────────────────────────────
    # Subtasks
    # ──────────────────────────────────────────

    @serialized
    def create_subtask(self, title: str, task_id: str) -> Document:
        subtask = new_document(SUBTASK, {"title": title, "task": task_id})
        self.store.load(TASK, task_id)

        saga = self._saga(f"createSubtask on {task_id}")
        self._add_create(saga, SUBTASK, subtask)
        self._add_link(saga, TASK, task_id, "subtasks", subtask["_id"])
        created = saga.run()[0]

        logger.info(f"Created subtask {subtask['_id']} on task {task_id}")
        return created

    @serialized
    def update_subtask(self, subtask_id: str, title: Optional[str] = None, is_completed: Optional[bool] = None) -> Document:
        """Set whichever fields were supplied, in one atomic write."""
        fields = provided_fields({"title": title, "isCompleted": is_completed})
        if not fields:
            return self.store.load(SUBTASK, subtask_id)
        subtask = self.store.update_fields(SUBTASK, subtask_id, fields)
        logger.info(f"Updated subtask {subtask_id}")
        return subtask

    @serialized
    def delete_subtask(self, subtask_id: str) -> Document:
        subtask = self.store.load(SUBTASK, subtask_id)

        saga = self._saga(f"deleteSubtask {subtask_id}")
        self._add_unlink(saga, TASK, subtask["task"], "subtasks", subtask_id)
        self._add_delete(saga, SUBTASK, subtask)
        saga.run()

        logger.info(f"Deleted subtask {subtask_id}")
        return subtask

    # ──────────────────────────────────────────
    # Consistency check
    # ──────────────────────────────────────────

    def _lookup(self, kind: EntityKind, entity_id: str) -> Optional[Document]:
        matches = self.store.find(kind, {"_id": entity_id})
        return matches[0] if matches else None

    @serialized
    def check(self, board_id: Optional[str] = None) -> List[IntegrityIssue]:
        """
        Report broken parent/child edges. Read-only.

        With board_id, only that board's aggregate is scanned.
        """
        if board_id is None:
            docs = {kind: self.store.find(kind) for kind in EntityKind}
        else:
            boards = [self.store.load(BOARD, board_id)]
            columns = self._columns_of(boards)
            tasks = self._tasks_of(columns) if columns else []
            subtasks = self._subtasks_of(tasks) if tasks else []
            docs = {BOARD: boards, COLUMN: columns, TASK: tasks, SUBTASK: subtasks}

        issues: List[IntegrityIssue] = []
        for parent_kind, list_field, child_kind, back_ref in EDGES:
            parents = {d["_id"]: d for d in docs[parent_kind]}
            children = {d["_id"]: d for d in docs[child_kind]}

            for parent_id, parent in parents.items():
                listed = parent.get(list_field) or []
                for child_id in sorted({cid for cid in listed if listed.count(cid) > 1}):
                    issues.append(IntegrityIssue(
                        IssueType.DUPLICATE, parent_kind, parent_id,
                        f"{list_field} lists {child_id} more than once",
                    ))
                for child_id in dict.fromkeys(listed):
                    child = children.get(child_id) or self._lookup(child_kind, child_id)
                    if child is None:
                        issues.append(IntegrityIssue(
                            IssueType.DANGLING, parent_kind, parent_id,
                            f"{list_field} lists missing {child_kind.value} {child_id}",
                        ))
                    elif child.get(back_ref) != parent_id:
                        issues.append(IntegrityIssue(
                            IssueType.MISMATCHED, parent_kind, parent_id,
                            f"{list_field} lists {child_id} which belongs to {child.get(back_ref)}",
                        ))

            for child_id, child in children.items():
                parent_id = child.get(back_ref)
                parent = parents.get(parent_id)
                if parent is None:
                    # Parent outside the scanned board
                    if self._lookup(parent_kind, parent_id) is None:
                        issues.append(IntegrityIssue(
                            IssueType.ORPHAN, child_kind, child_id,
                            f"{back_ref} {parent_id} does not exist",
                        ))
                elif child_id not in (parent.get(list_field) or []):
                    issues.append(IntegrityIssue(
                        IssueType.UNLISTED, child_kind, child_id,
                        f"not listed in {parent_kind.value} {parent_id}.{list_field}",
                    ))

        if issues:
            logger.warning(f"Integrity check found {len(issues)} issues")
        return issues
