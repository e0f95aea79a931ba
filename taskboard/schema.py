"""
Task board schema.

Hierarchy:
  Board → Column → Task → Subtask

Each child stores a single back-reference to its parent id; each parent
stores an ordered list of its children's ids. Documents are plain dicts
keyed by "_id".
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ValidationError


class EntityKind(Enum):
    """The four entity kinds stored in the board."""
    BOARD = "board"
    COLUMN = "column"
    TASK = "task"
    SUBTASK = "subtask"

    @classmethod
    def from_str(cls, value: str) -> "EntityKind":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValidationError(f"Unknown entity kind: {value}")


@dataclass(frozen=True)
class FieldSpec:
    """Declaration of one document field."""
    type: str                       # "string", "boolean", "ref", "ref_list"
    required: bool = False
    default: Any = None
    ref: Optional[EntityKind] = None  # Target kind for ref / ref_list

    def make_default(self) -> Any:
        if self.type == "ref_list":
            return []
        return self.default


SCHEMAS: Dict[EntityKind, Dict[str, FieldSpec]] = {
    EntityKind.BOARD: {
        "name": FieldSpec("string", required=True),
        "columns": FieldSpec("ref_list", ref=EntityKind.COLUMN),
    },
    EntityKind.COLUMN: {
        "name": FieldSpec("string", required=True),
        "board": FieldSpec("ref", required=True, ref=EntityKind.BOARD),
        "tasks": FieldSpec("ref_list", ref=EntityKind.TASK),
    },
    EntityKind.TASK: {
        "title": FieldSpec("string", required=True),
        "description": FieldSpec("string"),
        "column": FieldSpec("ref", required=True, ref=EntityKind.COLUMN),
        "subtasks": FieldSpec("ref_list", ref=EntityKind.SUBTASK),
    },
    EntityKind.SUBTASK: {
        "title": FieldSpec("string", required=True),
        "isCompleted": FieldSpec("boolean", required=True, default=False),
        "task": FieldSpec("ref", required=True, ref=EntityKind.TASK),
    },
}


def new_id() -> str:
    """Opaque unique entity id."""
    return uuid.uuid4().hex


def field_spec(kind: EntityKind, name: str) -> FieldSpec:
    spec = SCHEMAS[kind].get(name)
    if spec is None:
        raise ValidationError(f"Unknown field for {kind.value}: {name}")
    return spec


def ref_kind(kind: EntityKind, name: str) -> EntityKind:
    """Kind referenced by a ref or ref_list field."""
    spec = field_spec(kind, name)
    if spec.ref is None:
        raise ValidationError(f"{kind.value}.{name} is not a reference field")
    return spec.ref


def validate_fields(kind: EntityKind, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check the given fields against the schema of `kind`.

    Only the supplied fields are checked; use new_document() to also
    enforce presence of required fields.

    Raises:
        ValidationError on unknown fields, wrong types or empty required values.
    """
    for name, value in fields.items():
        spec = field_spec(kind, name)

        if value is None:
            if spec.required:
                raise ValidationError(f"{kind.value}.{name} is required")
            continue

        if spec.type == "string":
            if not isinstance(value, str):
                raise ValidationError(f"{kind.value}.{name} must be a string")
            if spec.required and not value.strip():
                raise ValidationError(f"{kind.value}.{name} must not be empty")
        elif spec.type == "boolean":
            if not isinstance(value, bool):
                raise ValidationError(f"{kind.value}.{name} must be a boolean")
        elif spec.type == "ref":
            if not isinstance(value, str) or not value:
                raise ValidationError(f"{kind.value}.{name} must be an id")
        elif spec.type == "ref_list":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValidationError(f"{kind.value}.{name} must be a list of ids")
    return fields


def new_document(kind: EntityKind, fields: Dict[str, Any], entity_id: Optional[str] = None) -> Dict[str, Any]:
    """Build a complete document: defaults applied, required fields enforced."""
    validate_fields(kind, fields)

    doc: Dict[str, Any] = {"_id": entity_id or new_id()}
    for name, spec in SCHEMAS[kind].items():
        value = fields.get(name)
        if value is None:
            value = spec.make_default()
        if value is None and spec.required:
            raise ValidationError(f"{kind.value}.{name} is required")
        doc[name] = list(value) if spec.type == "ref_list" else value
    return doc
