"""
Document store backed by SQLite.

Each record is a JSON document in the `documents` table, addressed by
(collection, id). Timestamps are stored as fixed-width UTC strings (see
time_utils.to_store) so range filters and ordering work on the raw JSON text.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel

import config
from time_utils import to_store

logger = logging.getLogger(__name__)

OPERATORS = {"==": "=", "!=": "!=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


class StoreError(Exception):
    """Base error for document store failures."""


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class ConflictError(StoreError):
    """A conditional write found the document in a different state."""

    def __init__(self, collection: str, doc_id: str, field: str):
        super().__init__(f"{collection}/{doc_id} changed: {field} no longer matches")
        self.collection = collection
        self.doc_id = doc_id
        self.field = field


def init_db():
    """Initialize database by running Alembic migrations."""
    import subprocess
    import os

    # Run alembic upgrade from the backend directory
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        check=True
    )


def encode_value(value: Any) -> Any:
    """Convert a Python value into its stored JSON form."""
    if isinstance(value, BaseModel):
        return encode_value(value.model_dump())
    if isinstance(value, datetime):
        return to_store(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [encode_value(v) for v in value]
    return value


def _json_path(field: str) -> str:
    if not field.replace("_", "").replace(".", "").isalnum():
        raise ValueError(f"Invalid field name: {field}")
    return f"$.{field}"


class DocumentStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH

    @contextmanager
    def get_db(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _row_to_doc(row) -> dict:
        doc = json.loads(row["data"])
        doc["id"] = row["id"]
        return doc

    def get_by_id(self, collection: str, doc_id: str) -> Optional[dict]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id)
            ).fetchone()
            return self._row_to_doc(row) if row else None

    def query(
        self,
        collection: str,
        filters: Iterable[tuple[str, str, Any]] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[dict] = None,
    ) -> list[dict]:
        """
        Find documents matching all filters.

        Args:
            collection: Collection name
            filters: (field, op, value) triples; op is one of ==, !=, <, <=, >, >=
            order_by: Field to sort by ascending. Ties are broken by document id.
            limit: Maximum number of documents to return
            cursor: Last document of the previous page; results start after it.
                Requires order_by.
        """
        clauses = ["collection = ?"]
        params: list[Any] = [collection]

        for field, op, value in filters:
            if op not in OPERATORS:
                raise ValueError(f"Unsupported operator: {op}")
            clauses.append(f"json_extract(data, ?) {OPERATORS[op]} ?")
            params.extend([_json_path(field), encode_value(value)])

        if cursor is not None:
            if not order_by:
                raise ValueError("cursor requires order_by")
            clauses.append(
                "(json_extract(data, ?) > ? OR (json_extract(data, ?) = ? AND id > ?))"
            )
            cursor_value = encode_value(cursor.get(order_by))
            params.extend([
                _json_path(order_by), cursor_value,
                _json_path(order_by), cursor_value,
                cursor["id"],
            ])

        sql = f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by:
            sql += " ORDER BY json_extract(data, ?), id"
            params.append(_json_path(order_by))
        else:
            sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self.get_db() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_doc(row) for row in rows]

    def create(self, collection: str, fields: dict, doc_id: Optional[str] = None) -> str:
        with self.get_db() as conn:
            doc_id = _insert(conn, collection, fields, doc_id)
            conn.commit()
        return doc_id

    def put(self, collection: str, doc_id: str, fields: dict) -> None:
        """Create or fully replace a document with a known id."""
        data = encode_value({k: v for k, v in fields.items() if k != "id"})
        with self.get_db() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO documents (collection, id, data) VALUES (?, ?, ?)",
                (collection, doc_id, json.dumps(data))
            )
            conn.commit()

    def update(self, collection: str, doc_id: str, fields: dict, expected: Optional[dict] = None) -> None:
        """
        Merge fields into an existing document.

        If `expected` is given, the write only happens while the stored
        document still holds those values; otherwise ConflictError is raised.
        """
        with self.transaction() as batch:
            batch.update(collection, doc_id, fields, expected)

    @contextmanager
    def transaction(self):
        """
        Group several writes into one transaction: all of them or none.

        The write lock is taken up front, so a conditional update in here sees
        the latest committed state.
        """
        with self.get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield WriteBatch(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def batch_write(self, collection: str, updates: list[tuple[str, dict]]) -> None:
        """Apply several partial updates atomically."""
        with self.transaction() as batch:
            for doc_id, fields in updates:
                batch.update(collection, doc_id, fields)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self.get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id)
            )
            conn.commit()
            return cursor.rowcount > 0


class WriteBatch:
    """Writes bound to one open transaction (see DocumentStore.transaction)."""

    def __init__(self, conn):
        self.conn = conn

    def create(self, collection: str, fields: dict, doc_id: Optional[str] = None) -> str:
        return _insert(self.conn, collection, fields, doc_id)

    def update(self, collection: str, doc_id: str, fields: dict, expected: Optional[dict] = None) -> None:
        row = self.conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id)
        ).fetchone()
        if not row:
            raise DocumentNotFoundError(collection, doc_id)
        data = json.loads(row["data"])

        for field, value in (expected or {}).items():
            if data.get(field) != encode_value(value):
                raise ConflictError(collection, doc_id, field)

        data.update(encode_value({k: v for k, v in fields.items() if k != "id"}))
        self.conn.execute(
            "UPDATE documents SET data = ? WHERE collection = ? AND id = ?",
            (json.dumps(data), collection, doc_id)
        )


def _insert(conn, collection: str, fields: dict, doc_id: Optional[str] = None) -> str:
    doc_id = doc_id or str(uuid.uuid4())
    data = encode_value({k: v for k, v in fields.items() if k != "id"})
    conn.execute(
        "INSERT INTO documents (collection, id, data) VALUES (?, ?, ?)",
        (collection, doc_id, json.dumps(data))
    )
    return doc_id
