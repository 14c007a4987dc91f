# notifier/db/documents.py
"""
Document store on a single Postgres JSONB table.

Collections are plain path strings ("tasks", "users/<email>/notifications"),
documents are JSON objects keyed by (collection, id). Queries are built with
a chained, immutable builder:

    docs = await document_store.collection("tasks").where("userEmail", "==", email).get()
"""

from dataclasses import dataclass, field
from typing import Any

from psycopg.types.json import Jsonb

from notifier.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from notifier.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DOCUMENTS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
)
"""

DOCUMENTS_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS documents_data_gin ON documents USING GIN (data jsonb_path_ops)
"""

SUPPORTED_OPERATORS = ("==", "!=", "<", "<=", ">", ">=")


class DocumentNotFoundError(DatabaseError):
    """Raised when updating a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(
            f"Document {collection}/{doc_id} not found", operation="update", recoverable=False
        )
        self.collection = collection
        self.doc_id = doc_id


@dataclass(frozen=True)
class Document:
    """A stored document: its id within the collection plus its JSON body."""

    id: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any


class CollectionQuery:
    """Immutable query over one collection; each where()/limit() returns a new query."""

    def __init__(
        self,
        store,
        collection: str,
        filters: tuple[FieldFilter, ...] = (),
        limit: int | None = None,
    ):
        self._store = store
        self.collection = collection
        self.filters = filters
        self.max_results = limit

    def where(self, field_path: str, op: str, value: Any) -> "CollectionQuery":
        if op not in SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported operator '{op}'")
        return CollectionQuery(
            self._store,
            self.collection,
            self.filters + (FieldFilter(field_path, op, value),),
            self.max_results,
        )

    def limit(self, count: int) -> "CollectionQuery":
        return CollectionQuery(self._store, self.collection, self.filters, count)

    async def get(self) -> list[Document]:
        return await self._store.run_query(self.collection, self.filters, self.max_results)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def build_query_sql(
    collection: str, filters: tuple[FieldFilter, ...], limit: int | None = None
) -> tuple[str, list[Any]]:
    """Translate a collection query into SQL with positional parameters."""
    clauses = ["collection = %s"]
    params: list[Any] = [collection]

    for flt in filters:
        path = flt.field.split(".")

        if flt.op in ("==", "!="):
            sql_op = "=" if flt.op == "==" else "<>"
            clauses.append(f"data #> %s::text[] {sql_op} %s")
            params.extend([path, Jsonb(flt.value)])
        elif _is_number(flt.value):
            # Non-numeric values at the path compare as NULL instead of failing the cast
            clauses.append(
                "CASE WHEN jsonb_typeof(data #> %s::text[]) = 'number' "
                f"THEN (data #>> %s::text[])::numeric END {flt.op} %s"
            )
            params.extend([path, path, flt.value])
        else:
            clauses.append(f"data #>> %s::text[] {flt.op} %s")
            params.extend([path, str(flt.value)])

    query = f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)} ORDER BY id"
    if limit is not None:
        query += " LIMIT %s"
        params.append(limit)

    return query, params


class DocumentStore:
    """Document-store operations over the shared pool."""

    def collection(self, path: str) -> CollectionQuery:
        return CollectionQuery(self, path)

    async def ensure_schema(self) -> None:
        await execute_query(DOCUMENTS_TABLE_DDL)
        await execute_query(DOCUMENTS_INDEX_DDL)
        logger.info("Document store schema ensured")

    @with_db_retry()
    async def get(self, collection: str, doc_id: str) -> Document | None:
        row = await fetch_one(
            "SELECT id, data FROM documents WHERE collection = %s AND id = %s",
            (collection, doc_id),
        )
        return Document(id=row["id"], data=row["data"]) if row else None

    @with_db_retry()
    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False
    ) -> None:
        merge_expr = "documents.data || EXCLUDED.data" if merge else "EXCLUDED.data"
        await execute_query(
            "INSERT INTO documents (collection, id, data, updated_at) "
            "VALUES (%s, %s, %s, now()) "
            "ON CONFLICT (collection, id) DO UPDATE "
            f"SET data = {merge_expr}, updated_at = now()",
            (collection, doc_id, Jsonb(data)),
        )

    @with_db_retry()
    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        affected = await execute_query(
            "UPDATE documents SET data = data || %s, updated_at = now() "
            "WHERE collection = %s AND id = %s",
            (Jsonb(fields), collection, doc_id),
        )
        if affected == 0:
            raise DocumentNotFoundError(collection, doc_id)

    @with_db_retry()
    async def delete(self, collection: str, doc_id: str) -> bool:
        affected = await execute_query(
            "DELETE FROM documents WHERE collection = %s AND id = %s", (collection, doc_id)
        )
        return affected > 0

    @with_db_retry()
    async def run_query(
        self, collection: str, filters: tuple[FieldFilter, ...], limit: int | None = None
    ) -> list[Document]:
        query, params = build_query_sql(collection, filters, limit)
        rows = await fetch_all(query, tuple(params))
        return [Document(id=row["id"], data=row["data"]) for row in rows]


# Global store instance
document_store = DocumentStore()
