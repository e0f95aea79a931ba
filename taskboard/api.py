"""
GraphQL API over the task board.

Root query fields read from the store; root mutation fields delegate to the
integrity engine. Reference fields (Board.columns, Column.board, Task.column,
...) accept either an embedded document or a stored id, so a selection can
follow edges in either direction to any depth.
"""
from typing import Any, Dict, List, Optional, Tuple

from ariadne import ObjectType, format_error, graphql_sync, make_executable_schema
from graphql import GraphQLError

from .errors import TaskBoardError, ValidationError
from .integrity import IntegrityEngine
from .schema import EntityKind

TYPE_DEFS = """
    type Board {
        _id: ID!
        name: String!
        columns: [Column!]
    }

    type Column {
        _id: ID!
        name: String
        board: Board!
        tasks: [Task!]
    }

    type Task {
        _id: ID!
        title: String!
        description: String
        column: Column!
        subtasks: [Subtask!]!
    }

    type Subtask {
        _id: ID!
        title: String!
        isCompleted: Boolean!
        task: Task!
    }

    input SubtaskInput {
        title: String!
    }

    type RootQuery {
        board(id: String): Board!
        boards: [Board!]!
        column(id: String): Column!
        task(id: String): Task!
    }

    type RootMutation {
        createBoard(name: String): Board
        updateBoard(id: String, name: String): Board
        deleteBoard(id: String!): Board
        createColumn(name: String, board: String): Column
        updateColumn(id: String!, name: String!): Column
        deleteColumn(id: String!): Column
        createTask(title: String!, column: String!, description: String, subtasks: [SubtaskInput]!): Task
        updateTask(id: String!, column: String, title: String, description: String): Task
        deleteTask(id: String!): Task
        createSubtask(title: String!, task: String!): Subtask
        updateSubtask(id: String!, title: String, isCompleted: Boolean): Subtask
        deleteSubtask(id: String!): Subtask
    }

    schema {
        query: RootQuery
        mutation: RootMutation
    }
"""

# GraphQL type → (entity kind, reference fields)
REFERENCES = {
    "Board": (EntityKind.BOARD, ["columns"]),
    "Column": (EntityKind.COLUMN, ["board", "tasks"]),
    "Task": (EntityKind.TASK, ["column", "subtasks"]),
    "Subtask": (EntityKind.SUBTASK, ["task"]),
}


def format_task_error(error: GraphQLError, debug: bool = False) -> dict:
    """Default GraphQL error shape, plus extensions.type for task board errors."""
    formatted = format_error(error, debug)
    original = getattr(error, "original_error", None)
    if isinstance(original, TaskBoardError):
        formatted["extensions"] = {**(formatted.get("extensions") or {}), "type": original.kind}
    return formatted


def subtask_titles(subtasks: Optional[List[Optional[Dict[str, Any]]]]) -> List[str]:
    titles = []
    for i, item in enumerate(subtasks or []):
        if item is None:
            raise ValidationError(f"subtasks[{i}] must not be null")
        titles.append(item["title"])
    return titles


class TaskBoardAPI:
    """Executable GraphQL schema bound to one engine and its store."""

    def __init__(self, engine: IntegrityEngine):
        self.engine = engine
        self.store = engine.store
        self.schema = make_executable_schema(TYPE_DEFS, *self._bindables())

    def execute(self, data: Any, debug: bool = False) -> Tuple[bool, Dict[str, Any]]:
        """
        Run one GraphQL request ({query, variables, operationName}).

        Returns:
            (success, result). success is False only when the request itself
            is malformed or fails validation; resolver errors are reported in
            result["errors"] next to whatever data resolved.
        """
        return graphql_sync(
            self.schema, data,
            debug=debug,
            logger=__name__,
            error_formatter=format_task_error,
        )

    def query(self, document: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Shorthand for in-process callers: returns the result dict."""
        return self.execute({"query": document, "variables": variables or {}})[1]

    # ──────────────────────────────────────────
    # Bindings
    # ──────────────────────────────────────────

    def _bindables(self) -> List[ObjectType]:
        query = ObjectType("RootQuery")
        query.set_field("board", self._board)
        query.set_field("boards", self._boards)
        query.set_field("column", self._column)
        query.set_field("task", self._task)

        engine = self.engine
        mutation = ObjectType("RootMutation")
        mutation.set_field("createBoard", lambda _, info, name=None: engine.create_board(name))
        mutation.set_field("updateBoard", lambda _, info, id=None, name=None: engine.update_board(id, name))
        mutation.set_field("deleteBoard", lambda _, info, id: engine.delete_board(id))
        mutation.set_field(
            "createColumn", lambda _, info, name=None, board=None: engine.create_column(name, board),
        )
        mutation.set_field("updateColumn", lambda _, info, id, name: engine.update_column(id, name))
        mutation.set_field("deleteColumn", lambda _, info, id: engine.delete_column(id))
        mutation.set_field("createTask", self._create_task)
        mutation.set_field("updateTask", self._update_task)
        mutation.set_field("deleteTask", lambda _, info, id: engine.delete_task(id))
        mutation.set_field("createSubtask", lambda _, info, title, task: engine.create_subtask(title, task))
        mutation.set_field("updateSubtask", self._update_subtask)
        mutation.set_field("deleteSubtask", lambda _, info, id: engine.delete_subtask(id))

        types = [query, mutation]
        for type_name, (kind, fields) in REFERENCES.items():
            object_type = ObjectType(type_name)
            for field in fields:
                object_type.set_field(field, self._reference(kind, field))
            types.append(object_type)
        return types

    def _reference(self, kind: EntityKind, field: str):
        def resolve(obj, info):
            value = obj.get(field)
            if isinstance(value, dict) or (isinstance(value, list) and value and isinstance(value[0], dict)):
                return value  # Already populated
            return self.store.populate(kind, obj, field)[field]
        return resolve

    # ──────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────

    def _board(self, _, info, id=None):
        return self.store.get(EntityKind.BOARD, id, populate="columns.tasks.subtasks")

    def _boards(self, _, info):
        return self.store.find(EntityKind.BOARD)

    def _column(self, _, info, id=None):
        return self.store.load(EntityKind.COLUMN, id)

    def _task(self, _, info, id=None):
        return self.store.get(EntityKind.TASK, id, populate="column subtasks")

    # ──────────────────────────────────────────
    # Mutations with more than a pass-through
    # ──────────────────────────────────────────

    def _create_task(self, _, info, title, column, subtasks, description=None):
        return self.engine.create_task(title, description, column, subtask_titles(subtasks))

    def _update_task(self, _, info, id, column=None, title=None, description=None):
        return self.engine.update_task(id, title=title, description=description, column_id=column)

    def _update_subtask(self, _, info, id, title=None, isCompleted=None):
        return self.engine.update_subtask(id, title=title, is_completed=isCompleted)
