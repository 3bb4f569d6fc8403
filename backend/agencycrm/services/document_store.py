"""Tenant document store on top of the ``documents`` table.

Documents are JSON objects addressed by slash-separated paths
(``agencies/{tenant}/customers/{id}/policies/{id}``). Writes go through
``WriteBatch`` objects that commit in a single transaction and refuse to
grow past the configured operation ceiling.

Field values may be the ``SERVER_TIMESTAMP`` sentinel or an ``Increment``;
both are resolved here at write time, never by the caller.
"""
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencycrm.core.config import settings
from agencycrm.models.document import Document

logger = logging.getLogger(__name__)

# High code point used as the upper bound of a prefix range query
PREFIX_END = "\uf8ff"


# ── errors ───────────────────────────────────────────────────────────

class StoreError(Exception):
    """Any failure talking to the document store."""


class DocumentNotFound(StoreError):
    pass


class BatchLimitExceeded(StoreError):
    pass


class InvalidPath(StoreError):
    pass


class InvalidDocument(StoreError):
    """A stored document does not decode into its record type."""


# ── sentinels ────────────────────────────────────────────────────────

class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    amount: float


def increment(amount) -> Increment:
    return Increment(amount)


# ── paths ────────────────────────────────────────────────────────────

def split_path(path: str) -> Tuple[str, str, str]:
    """Return (collection_path, collection_id, doc_id) for a document path."""
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2 or len(parts) % 2:
        raise InvalidPath(f"Not a document path: '{path}'")
    return "/".join(parts[:-1]), parts[-2], parts[-1]


def new_doc_id() -> str:
    return uuid.uuid4().hex[:20]


@dataclass
class DocumentSnapshot:
    path: str
    data: Dict[str, Any]

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]


def get_field(data: Dict[str, Any], field_path: str, default=None):
    """Read a dotted field path (``address.zip``) out of a document dict."""
    current: Any = data
    for key in field_path.split("."):
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


_MISSING = object()

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
}

_SQL_OPERATORS = {op: fn for op, fn in _OPERATORS.items() if op != "!="}


def _matches(data: Dict[str, Any], filters: Sequence[Tuple[str, str, Any]]) -> bool:
    for field_path, op, value in filters:
        current = get_field(data, field_path, _MISSING)
        if current is _MISSING or (current is None and op != "=="):
            return False
        try:
            if not _OPERATORS[op](current, value):
                return False
        except TypeError:
            # Mismatched types never satisfy a range predicate
            return False
    return True


@dataclass
class _Op:
    kind: str  # "set" | "update" | "delete"
    path: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class WriteBatch:
    """Queued writes applied atomically by ``commit()``."""

    def __init__(self, store: "DocumentStore", max_ops: int):
        self._store = store
        self.max_ops = max_ops
        self._ops: List[_Op] = []
        self.committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def _add(self, op: _Op) -> "WriteBatch":
        if self.committed:
            raise StoreError("Batch already committed")
        split_path(op.path)
        if len(self._ops) >= self.max_ops:
            raise BatchLimitExceeded(
                f"Batch holds {len(self._ops)} operations; limit is {self.max_ops}"
            )
        self._ops.append(op)
        return self

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        return self._add(_Op("set", path, dict(data), merge))

    def update(self, path: str, fields: Dict[str, Any]) -> "WriteBatch":
        return self._add(_Op("update", path, dict(fields)))

    def delete(self, path: str) -> "WriteBatch":
        return self._add(_Op("delete", path))

    def commit(self) -> int:
        count = self._store._commit(self._ops)
        self.committed = True
        return count


class DocumentStore:
    """Document store API used by every service.

    ``now`` is injectable so tests can pin "server time".
    """

    def __init__(
        self,
        db: Session,
        max_batch_ops: int = settings.STORE_MAX_BATCH_OPS,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.max_batch_ops = max_batch_ops
        self._now = now or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now()

    # ── reads ────────────────────────────────────────────────────────

    def get(self, path: str) -> Optional[DocumentSnapshot]:
        split_path(path)
        try:
            row = self.db.query(Document).filter(Document.path == path).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"get {path} failed: {e}") from e
        if row is None:
            return None
        return DocumentSnapshot(path=row.path, data=copy.deepcopy(row.data or {}))

    def query(
        self,
        collection_path: str,
        filters: Optional[Sequence[Tuple[str, str, Any]]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        """Documents directly inside one collection matching every filter."""
        q = self.db.query(Document).filter(Document.collection_path == collection_path.strip("/"))
        return self._run(q, filters or [], order_by, limit)

    def collection_group(
        self,
        collection_id: str,
        filters: Optional[Sequence[Tuple[str, str, Any]]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        """Documents in every collection named ``collection_id``, at any depth."""
        q = self.db.query(Document).filter(Document.collection_id == collection_id)
        return self._run(q, filters or [], order_by, limit)

    def _text_field(self, field_path: str):
        expr = Document.data[field_path].as_string()
        if self.db.get_bind().dialect.name == "postgresql":
            # Code point order, same as Python string comparison
            expr = expr.collate("C")
        return expr

    def _fetch(self, q) -> List[Document]:
        try:
            return q.all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"query failed: {e}") from e

    def _run(self, q, filters, order_by, limit) -> List[DocumentSnapshot]:
        in_sql = True
        for field_path, op, value in filters:
            if op not in _OPERATORS:
                raise StoreError(f"Unsupported query operator: {op}")
            # String comparisons on top-level fields run in SQL; the rest only in Python
            if op in _SQL_OPERATORS and isinstance(value, str) and "." not in field_path:
                q = q.filter(_SQL_OPERATORS[op](self._text_field(field_path), value))
            else:
                in_sql = False

        q = q.order_by(Document.path)
        if limit is not None and in_sql and not order_by:
            q = q.limit(limit)
        rows = self._fetch(q)

        docs = [
            DocumentSnapshot(path=r.path, data=copy.deepcopy(r.data or {}))
            for r in rows
            if _matches(r.data or {}, filters)
        ]
        if order_by:
            descending = order_by.startswith("-")
            key_field = order_by.lstrip("-")
            present = [d for d in docs if get_field(d.data, key_field) is not None]
            absent = [d for d in docs if get_field(d.data, key_field) is None]
            present.sort(key=lambda d: get_field(d.data, key_field), reverse=descending)
            docs = present + absent
        if limit is not None:
            docs = docs[:limit]
        return docs

    # ── writes ───────────────────────────────────────────────────────

    def batch(self, max_ops: Optional[int] = None) -> WriteBatch:
        return WriteBatch(self, min(max_ops or self.max_batch_ops, self.max_batch_ops))

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        self.batch().set(path, data, merge=merge).commit()

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        self.batch().update(path, fields).commit()

    def delete(self, path: str) -> None:
        self.batch().delete(path).commit()

    def _commit(self, ops: List[_Op]) -> int:
        if not ops:
            return 0
        now_iso = self.now().isoformat()
        try:
            for op in ops:
                self._apply(op, now_iso)
                self.db.flush()
            self.db.commit()
        except StoreError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"batch commit failed: {e}") from e
        logger.debug(f"Committed batch of {len(ops)} operations")
        return len(ops)

    def _apply(self, op: _Op, now_iso: str) -> None:
        row = self.db.query(Document).filter(Document.path == op.path).first()

        if op.kind == "delete":
            if row is not None:
                self.db.delete(row)
            return

        if op.kind == "update":
            if row is None:
                raise DocumentNotFound(f"No document to update at '{op.path}'")
            data = copy.deepcopy(row.data or {})
            for field_path, value in op.data.items():
                _set_field(data, field_path, value, now_iso)
            row.data = data
            return

        base = copy.deepcopy(row.data or {}) if (row is not None and op.merge) else {}
        data = _resolve(op.data, base, now_iso)
        if row is None:
            collection_path, collection_id, doc_id = split_path(op.path)
            self.db.add(Document(
                path=op.path,
                collection_path=collection_path,
                collection_id=collection_id,
                doc_id=doc_id,
                data=data,
            ))
        else:
            row.data = data


def _resolve_value(value, current, now_iso: str):
    if value is SERVER_TIMESTAMP:
        return now_iso
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, dict):
        return _resolve(value, current if isinstance(current, dict) else {}, now_iso)
    return value


def _resolve(values: Dict[str, Any], base: Dict[str, Any], now_iso: str) -> Dict[str, Any]:
    """Merge ``values`` over ``base`` resolving sentinels; nested dicts merge recursively."""
    out = dict(base)
    for key, value in values.items():
        out[key] = _resolve_value(value, base.get(key), now_iso)
    return out


def _set_field(data: Dict[str, Any], field_path: str, value, now_iso: str) -> None:
    keys = field_path.split(".")
    target = data
    for key in keys[:-1]:
        if not isinstance(target.get(key), dict):
            target[key] = {}
        target = target[key]
    leaf = keys[-1]
    if isinstance(value, dict):
        # update() replaces map values wholesale
        target[leaf] = _resolve(value, {}, now_iso)
    else:
        target[leaf] = _resolve_value(value, target.get(leaf), now_iso)
