"""Dict-backed :class:`~birthday_sync.core.store.DocumentStore`."""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from typing import Any

from birthday_sync.core.store import (
    CASConflictError,
    Document,
    DocumentNotFoundError,
    split_fields,
)


def _contains(data: Any, expected: Any) -> bool:
    if isinstance(expected, Mapping):
        if not isinstance(data, Mapping):
            return False
        return all(key in data and _contains(data[key], value) for key, value in expected.items())
    if isinstance(expected, list):
        if not isinstance(data, list):
            return False
        return all(any(_contains(item, want) for item in data) for want in expected)
    return data == expected


class InMemoryDocumentStore:
    """Same semantics as the Postgres store, including versions and JSON round-tripping."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self.update_calls: list[tuple[str, str, dict[str, Any]]] = []

    def _collection(self, name: str) -> dict[str, Document]:
        return self._collections.setdefault(name, {})

    def seed(self, collection: str, document_id: str, data: Mapping[str, Any]) -> None:
        self._collection(collection)[document_id] = Document(
            id=document_id, data=_roundtrip(data), version=1
        )

    def snapshot(self, collection: str, document_id: str) -> dict[str, Any] | None:
        document = self._collection(collection).get(document_id)
        return copy.deepcopy(document.data) if document is not None else None

    async def get(self, collection: str, document_id: str) -> Document | None:
        document = self._collection(collection).get(document_id)
        if document is None:
            return None
        return Document(id=document.id, data=copy.deepcopy(document.data), version=document.version)

    async def insert(self, collection: str, document_id: str, data: Mapping[str, Any]) -> int:
        existing = self._collection(collection).get(document_id)
        version = existing.version + 1 if existing is not None else 1
        self._collection(collection)[document_id] = Document(
            id=document_id, data=_roundtrip(data), version=version
        )
        return version

    async def update(
        self,
        collection: str,
        document_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        self.update_calls.append((collection, document_id, dict(fields)))
        existing = self._collection(collection).get(document_id)
        if existing is None:
            if expected_version is None:
                raise DocumentNotFoundError(collection, document_id)
            raise CASConflictError(f"{collection}/{document_id}", expected_version, None)
        if expected_version is not None and existing.version != expected_version:
            raise CASConflictError(
                f"{collection}/{document_id}", expected_version, existing.version
            )
        to_set, to_remove = split_fields(fields)
        data = {key: value for key, value in existing.data.items() if key not in to_remove}
        data.update(_roundtrip(to_set))
        version = existing.version + 1
        self._collection(collection)[document_id] = Document(
            id=document_id, data=data, version=version
        )
        return version

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
        existing = self._collection(collection).get(document_id)
        if existing is None:
            raise DocumentNotFoundError(collection, document_id)
        data = copy.deepcopy(existing.data)
        data[field] = int(data.get(field) or 0) + amount
        if append_field is not None:
            data[append_field] = list(data.get(append_field) or []) + _roundtrip(
                list(append_items or [])
            )
        document = Document(id=document_id, data=data, version=existing.version + 1)
        self._collection(collection)[document_id] = document
        return Document(id=document.id, data=copy.deepcopy(data), version=document.version)

    async def find(self, collection: str, filters: Mapping[str, Any]) -> list[Document]:
        expected = _roundtrip(filters)
        return [
            Document(id=document.id, data=copy.deepcopy(document.data), version=document.version)
            for document_id, document in sorted(self._collection(collection).items())
            if _contains(document.data, expected)
        ]


def _roundtrip(value: Any) -> Any:
    return json.loads(json.dumps(value))
