"""Document store backed by PostgreSQL JSONB.

Each collection holds JSON documents keyed by ID. Every write bumps a
per-document ``version`` so callers can do compare-and-swap updates: read a
document, compute a change, and write it back only if nobody else wrote in
between.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import asyncpg

logger = logging.getLogger(__name__)


class _DeleteField:
    """Marker that removes a field from a document (distinct from writing null)."""

    _instance: _DeleteField | None = None

    def __new__(cls) -> _DeleteField:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD: Any = _DeleteField()

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
);
CREATE INDEX IF NOT EXISTS documents_data_gin ON documents USING GIN (data jsonb_path_ops);
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column value returned by asyncpg as text."""
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class DocumentNotFoundError(LookupError):
    def __init__(self, collection: str, document_id: str) -> None:
        self.collection = collection
        self.document_id = document_id
        super().__init__(f"Document {collection}/{document_id} not found")


class CASConflictError(Exception):
    """Raised when a versioned update finds a different version than expected.

    Attributes:
        key: ``collection/id`` of the document involved in the conflict.
        expected_version: The version the caller read the document at.
        actual_version: The version found in the store (or None if the document is gone).
    """

    def __init__(
        self,
        key: str,
        expected_version: int,
        actual_version: int | None,
    ) -> None:
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"CAS conflict on {key!r}: expected version {expected_version}, "
            f"got {actual_version!r}"
        )


@dataclass(frozen=True)
class Document:
    id: str
    data: dict[str, Any]
    version: int


class DocumentStore(Protocol):
    """Storage contract used by the repositories."""

    async def get(self, collection: str, document_id: str) -> Document | None: ...

    async def insert(self, collection: str, document_id: str, data: Mapping[str, Any]) -> int: ...

    async def update(
        self,
        collection: str,
        document_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int: ...

    async def increment(
        self,
        collection: str,
        document_id: str,
        field: str,
        amount: int = 1,
        *,
        append_field: str | None = None,
        append_items: list[Any] | None = None,
    ) -> Document: ...

    async def find(self, collection: str, filters: Mapping[str, Any]) -> list[Document]: ...


def split_fields(fields: Mapping[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Split an update mapping into fields to set and fields to remove."""
    to_set = {name: value for name, value in fields.items() if value is not DELETE_FIELD}
    to_remove = [name for name, value in fields.items() if value is DELETE_FIELD]
    return to_set, to_remove


class PostgresDocumentStore:
    """:class:`DocumentStore` over a single ``documents`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        await self._pool.execute(SCHEMA_SQL)

    async def get(self, collection: str, document_id: str) -> Document | None:
        row = await self._pool.fetchrow(
            "SELECT id, data, version FROM documents WHERE collection = $1 AND id = $2",
            collection,
            document_id,
        )
        if row is None:
            return None
        return _row_to_document(row)

    async def insert(self, collection: str, document_id: str, data: Mapping[str, Any]) -> int:
        """Insert a new document, replacing any existing one with the same ID.

        Returns:
            The version of the stored document.
        """
        new_version: int = await self._pool.fetchval(
            """
            INSERT INTO documents (collection, id, data, version)
            VALUES ($1, $2, $3::jsonb, 1)
            ON CONFLICT (collection, id) DO UPDATE
                SET data = EXCLUDED.data,
                    updated_at = now(),
                    version = documents.version + 1
            RETURNING version
            """,
            collection,
            document_id,
            json.dumps(dict(data)),
        )
        return new_version

    async def update(
        self,
        collection: str,
        document_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        """Merge *fields* into a document's top level.

        Values equal to :data:`DELETE_FIELD` remove the field. When
        *expected_version* is given the write only happens if the stored
        version still matches.

        Returns:
            The new version number after the update.

        Raises:
            CASConflictError: *expected_version* was given and did not match,
                or the document is gone.
            DocumentNotFoundError: No *expected_version* and the document does not exist.
        """
        to_set, to_remove = split_fields(fields)
        row = await self._pool.fetchrow(
            """
            UPDATE documents
            SET data = (data - $4::text[]) || $3::jsonb,
                updated_at = now(),
                version = version + 1
            WHERE collection = $1 AND id = $2
              AND ($5::integer IS NULL OR version = $5::integer)
            RETURNING version
            """,
            collection,
            document_id,
            json.dumps(to_set),
            to_remove,
            expected_version,
        )
        if row is not None:
            return row["version"]

        actual = await self._pool.fetchval(
            "SELECT version FROM documents WHERE collection = $1 AND id = $2",
            collection,
            document_id,
        )
        if expected_version is None:
            raise DocumentNotFoundError(collection, document_id)
        raise CASConflictError(
            key=f"{collection}/{document_id}",
            expected_version=expected_version,
            actual_version=actual,
        )

    async def increment(
        self,
        collection: str,
        document_id: str,
        field: str,
        amount: int = 1,
        *,
        append_field: str | None = None,
        append_items: list[Any] | None = None,
    ) -> Document:
        """Atomically add *amount* to an integer field, optionally appending to a list field.

        Returns:
            The document as it reads after the increment.
        """
        row = await self._pool.fetchrow(
            """
            UPDATE documents
            SET data = jsonb_set(
                    CASE WHEN $5::text IS NULL THEN data
                         ELSE jsonb_set(
                             data,
                             ARRAY[$5::text],
                             COALESCE(data -> $5::text, '[]'::jsonb) || $6::jsonb
                         )
                    END,
                    ARRAY[$3::text],
                    to_jsonb(COALESCE((data ->> $3::text)::integer, 0) + $4::integer)
                ),
                updated_at = now(),
                version = version + 1
            WHERE collection = $1 AND id = $2
            RETURNING id, data, version
            """,
            collection,
            document_id,
            field,
            amount,
            append_field,
            json.dumps(append_items or []),
        )
        if row is None:
            raise DocumentNotFoundError(collection, document_id)
        return _row_to_document(row)

    async def find(self, collection: str, filters: Mapping[str, Any]) -> list[Document]:
        """Return documents whose data contains *filters* (JSONB containment), ordered by ID."""
        rows = await self._pool.fetch(
            """
            SELECT id, data, version FROM documents
            WHERE collection = $1 AND data @> $2::jsonb
            ORDER BY id
            """,
            collection,
            json.dumps(dict(filters)),
        )
        return [_row_to_document(row) for row in rows]


def _row_to_document(row: Mapping[str, Any]) -> Document:
    data = decode_jsonb(row["data"])
    return Document(
        id=row["id"], data=data if isinstance(data, dict) else {}, version=row["version"]
    )


async def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
    logger.info("Connected to document store (pool %d-%d)", min_size, max_size)
    return pool
