"""
Entity store backends.

EntityStore is the capability the integrity engine relies on: per-document
CRUD, id lookups, filtered finds and atomic single-document array updates.
There are no multi-document transactions.

SQLiteEntityStore keeps every entity as a JSON document in one table.
"""
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import NotFound, StoreError, ValidationError
from .schema import EntityKind, field_spec, new_document, validate_fields

logger = logging.getLogger(__name__)

# Ids bound per IN (...) query; SQLite caps host parameters per statement
IN_BATCH_SIZE = 500

Document = Dict[str, Any]
Filter = Dict[str, Any]
PopulateSpec = Union[None, str, List[str], Dict[str, Any]]


def parse_populate(spec: PopulateSpec) -> Dict[str, Dict]:
    """
    Normalize a populate spec into a nested dict.

    Accepts a nested dict, a dotted path ("columns.tasks.subtasks"),
    several space-separated paths ("column subtasks"), or a list of these.
    """
    if not spec:
        return {}
    if isinstance(spec, dict):
        return {name: parse_populate(sub) for name, sub in spec.items()}

    paths = spec.split() if isinstance(spec, str) else spec
    tree: Dict[str, Dict] = {}
    for path in paths:
        if isinstance(path, dict):
            _merge(tree, parse_populate(path))
            continue
        node = tree
        for part in path.split("."):
            node = node.setdefault(part, {})
    return tree


def _merge(into: Dict[str, Dict], other: Dict[str, Dict]) -> None:
    for name, sub in other.items():
        _merge(into.setdefault(name, {}), sub)


class EntityStore(ABC):
    """Storage capability consumed by the integrity engine."""

    @abstractmethod
    def create(self, kind: EntityKind, fields: Document, entity_id: Optional[str] = None) -> Document:
        """Insert a new document. Defaults applied; returns the stored document."""

    @abstractmethod
    def load(self, kind: EntityKind, entity_id: str) -> Document:
        """Fetch one document by id. Raises NotFound."""

    @abstractmethod
    def update_fields(self, kind: EntityKind, entity_id: str, fields: Document) -> Document:
        """Set the given fields on one document. Raises NotFound."""

    @abstractmethod
    def delete(self, kind: EntityKind, entity_id: str) -> Document:
        """Delete one document and return its pre-delete contents. Raises NotFound."""

    @abstractmethod
    def find(self, kind: EntityKind, filter: Optional[Filter] = None) -> List[Document]:
        """
        Documents of `kind` matching every clause of `filter`, in insertion order.

        A clause is {field: value} or {field: {"$in": [values]}}.
        """

    @abstractmethod
    def add_to_array(
        self, kind: EntityKind, entity_id: str, field: str, value: str,
        position: Optional[int] = None,
    ) -> Document:
        """Add `value` to an array field unless already present. Raises NotFound."""

    @abstractmethod
    def remove_from_array(self, kind: EntityKind, entity_id: str, field: str, value: str) -> Optional[int]:
        """Remove `value` from an array field. Returns its former index, or None if absent."""

    def get(self, kind: EntityKind, entity_id: str, populate: PopulateSpec = None) -> Document:
        """Fetch one document, expanding referenced ids along `populate`."""
        doc = self.load(kind, entity_id)
        return self.populate(kind, doc, populate)

    def populate(self, kind: EntityKind, doc: Document, spec: PopulateSpec) -> Document:
        """
        Replace referenced ids with embedded documents, to any depth.

        Ids in an array reference that no longer resolve are dropped;
        a missing scalar reference becomes None.
        """
        tree = parse_populate(spec)
        if not tree:
            return doc

        out = dict(doc)
        for name, sub in tree.items():
            fspec = field_spec(kind, name)
            if fspec.ref is None:
                raise ValidationError(f"Cannot populate non-reference field {kind.value}.{name}")
            target = fspec.ref

            if fspec.type == "ref_list":
                ids = doc.get(name) or []
                found = {d["_id"]: d for d in self.find(target, {"_id": {"$in": ids}})}
                out[name] = [self.populate(target, found[i], sub) for i in ids if i in found]
            else:
                ref_id = doc.get(name)
                matches = self.find(target, {"_id": ref_id}) if ref_id else []
                out[name] = self.populate(target, matches[0], sub) if matches else None
        return out


def _connect(db_path: str, timeout: float) -> sqlite3.Connection:
    """Open an autocommit connection in WAL mode; transactions are explicit."""
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sql_value(value: Any) -> Any:
    # json_extract yields 1/0 for JSON booleans
    if isinstance(value, bool):
        return int(value)
    return value


def _in_clause(column: str, count: int) -> str:
    return f"{column} IN ({', '.join('?' for _ in range(count))})"


class SQLiteEntityStore(EntityStore):
    """SQLite-backed document store."""

    def __init__(self, db_path: Optional[str] = None, timeout: float = 5.0):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "taskboard.db")
        self.db_path = db_path
        self.timeout = timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self._session(write=True) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body TEXT NOT NULL,  -- JSON document
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (kind, id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_kind ON documents(kind)")

    @contextmanager
    def _session(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Connection scope. Writes run inside BEGIN IMMEDIATE so each
        read-modify-write on a single document is atomic.
        """
        try:
            conn = _connect(self.db_path, self.timeout)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store {self.db_path}: {e}") from e

        try:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            if conn.in_transaction:
                conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.rollback()
            if isinstance(e, sqlite3.Error):
                raise StoreError(f"Store operation failed: {e}") from e
            raise
        finally:
            conn.close()

    def _fetch(self, conn: sqlite3.Connection, kind: EntityKind, entity_id: str) -> Document:
        row = conn.execute(
            "SELECT body FROM documents WHERE kind = ? AND id = ?",
            (kind.value, entity_id),
        ).fetchone()
        if not row:
            raise NotFound(kind.value, entity_id)
        return json.loads(row["body"])

    def _write(self, conn: sqlite3.Connection, kind: EntityKind, doc: Document) -> None:
        conn.execute(
            "UPDATE documents SET body = ?, updated_at = ? WHERE kind = ? AND id = ?",
            (json.dumps(doc), _utc_now(), kind.value, doc["_id"]),
        )

    def _array_field(self, kind: EntityKind, field: str) -> None:
        if field_spec(kind, field).type != "ref_list":
            raise ValidationError(f"{kind.value}.{field} is not an array field")

    def create(self, kind: EntityKind, fields: Document, entity_id: Optional[str] = None) -> Document:
        doc = new_document(kind, fields, entity_id=entity_id)
        now = _utc_now()
        with self._session(write=True) as conn:
            conn.execute(
                "INSERT INTO documents (kind, id, body, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (kind.value, doc["_id"], json.dumps(doc), now, now),
            )
        logger.debug(f"Created {kind.value} {doc['_id']}")
        return doc

    def load(self, kind: EntityKind, entity_id: str) -> Document:
        with self._session() as conn:
            return self._fetch(conn, kind, entity_id)

    def update_fields(self, kind: EntityKind, entity_id: str, fields: Document) -> Document:
        validate_fields(kind, fields)
        with self._session(write=True) as conn:
            doc = self._fetch(conn, kind, entity_id)
            doc.update(fields)
            self._write(conn, kind, doc)
        return doc

    def delete(self, kind: EntityKind, entity_id: str) -> Document:
        with self._session(write=True) as conn:
            doc = self._fetch(conn, kind, entity_id)
            conn.execute(
                "DELETE FROM documents WHERE kind = ? AND id = ?",
                (kind.value, entity_id),
            )
        logger.debug(f"Deleted {kind.value} {entity_id}")
        return doc

    def find(self, kind: EntityKind, filter: Optional[Filter] = None) -> List[Document]:
        clauses = ["kind = ?"]
        params: List[Any] = [kind.value]
        in_lists = []

        for name, cond in (filter or {}).items():
            if name == "_id":
                column = "id"
            else:
                field_spec(kind, name)  # Rejects unknown field names
                column = f"json_extract(body, '$.{name}')"

            if isinstance(cond, dict):
                values = cond.get("$in")
                if values is None:
                    raise ValidationError(f"Unsupported filter on {name}: {cond}")
                if not values:
                    return []
                in_lists.append((column, list(dict.fromkeys(_sql_value(v) for v in values))))
            elif cond is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(_sql_value(cond))

        # The longest $in list is split into batches; any others are bound whole
        batches: List[List[Any]] = [[]]
        batch_column = None
        if in_lists:
            in_lists.sort(key=lambda item: len(item[1]))
            batch_column, values = in_lists.pop()
            batches = [values[i:i + IN_BATCH_SIZE] for i in range(0, len(values), IN_BATCH_SIZE)]
            for column, other in in_lists:
                clauses.append(_in_clause(column, len(other)))
                params.extend(other)

        rows = []
        with self._session() as conn:
            for batch in batches:
                where = clauses + ([_in_clause(batch_column, len(batch))] if batch_column else [])
                rows.extend(conn.execute(
                    f"SELECT rowid AS seq, body FROM documents WHERE {' AND '.join(where)}",
                    params + batch,
                ).fetchall())
        rows.sort(key=lambda row: row["seq"])
        return [json.loads(row["body"]) for row in rows]

    def add_to_array(
        self, kind: EntityKind, entity_id: str, field: str, value: str,
        position: Optional[int] = None,
    ) -> Document:
        self._array_field(kind, field)
        with self._session(write=True) as conn:
            doc = self._fetch(conn, kind, entity_id)
            items = doc.setdefault(field, [])
            if value not in items:
                if position is None:
                    items.append(value)
                else:
                    items.insert(position, value)
                self._write(conn, kind, doc)
        return doc

    def remove_from_array(self, kind: EntityKind, entity_id: str, field: str, value: str) -> Optional[int]:
        self._array_field(kind, field)
        with self._session(write=True) as conn:
            doc = self._fetch(conn, kind, entity_id)
            items = doc.get(field) or []
            if value not in items:
                return None
            index = items.index(value)
            doc[field] = [item for item in items if item != value]
            self._write(conn, kind, doc)
        return index
