"""Write-once embedding record stores."""

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, cast, runtime_checkable

from aicore.vectors.embeddings import vector_literal

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - import guard
    psycopg = cast(Any, None)
    dict_row = cast(Any, None)

logger = logging.getLogger("aicore.vectors")

TABLE_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


@dataclass(frozen=True)
class EmbeddingRecord:
    content_hash: str
    vector: tuple[float, ...]
    source_id: str
    created_at: float
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def dimension(self) -> int:
        return len(self.vector)

    def as_dict(self) -> dict[str, object]:
        return {
            "content_hash": self.content_hash,
            "dimension": self.dimension,
            "source_id": self.source_id,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
        }


class EmbeddingStore(Protocol):
    def get(self, content_hash: str) -> EmbeddingRecord | None:
        """Return the record for *content_hash*, if stored."""

    def existing(self, content_hashes: list[str]) -> set[str]:
        """Return the subset of *content_hashes* already stored."""

    def put_many(self, records: list[EmbeddingRecord]) -> list[EmbeddingRecord]:
        """Insert records whose hash is not yet stored; return the inserted ones."""

    def delete(self, content_hash: str) -> bool:
        """Remove a record so it can be re-created."""

    def all_records(self) -> list[EmbeddingRecord]:
        """Return every stored record (used to rebuild the ANN index)."""

    def count(self) -> int:
        """Return the number of stored records."""


@runtime_checkable
class NativeSearchStore(Protocol):
    def search(
        self, vector: list[float], k: int, filters: dict[str, str]
    ) -> list[tuple[EmbeddingRecord, float]]:
        """Nearest neighbours computed by the backend itself."""


class InMemoryEmbeddingStore:
    def __init__(self) -> None:
        self._records: dict[str, EmbeddingRecord] = {}
        self._lock = threading.Lock()

    def get(self, content_hash: str) -> EmbeddingRecord | None:
        with self._lock:
            return self._records.get(content_hash)

    def existing(self, content_hashes: list[str]) -> set[str]:
        with self._lock:
            return {item for item in content_hashes if item in self._records}

    def put_many(self, records: list[EmbeddingRecord]) -> list[EmbeddingRecord]:
        inserted: list[EmbeddingRecord] = []
        with self._lock:
            for record in records:
                if record.content_hash in self._records:
                    continue
                self._records[record.content_hash] = record
                inserted.append(record)
        return inserted

    def delete(self, content_hash: str) -> bool:
        with self._lock:
            return self._records.pop(content_hash, None) is not None

    def all_records(self) -> list[EmbeddingRecord]:
        with self._lock:
            return list(self._records.values())

    def count(self) -> int:
        with self._lock:
            return len(self._records)


class PgvectorEmbeddingStore:
    """Postgres + pgvector store with an HNSW cosine index."""

    def __init__(self, dsn: str, table: str = "embedding_records", embedding_dim: int = 64):
        if psycopg is None or dict_row is None:
            raise RuntimeError("psycopg is required for the pgvector embedding store")
        if not TABLE_NAME_RE.match(table):
            raise ValueError(f"Invalid table name: {table}")
        self._dsn = dsn
        self._table = table
        self._embedding_dim = embedding_dim

    def ensure_schema(self) -> None:
        ddl = f"""
        CREATE EXTENSION IF NOT EXISTS vector;
        CREATE TABLE IF NOT EXISTS {self._table} (
            content_hash TEXT PRIMARY KEY,
            source_id TEXT NOT NULL,
            created_at DOUBLE PRECISION NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            embedding VECTOR({self._embedding_dim}) NOT NULL
        );
        CREATE INDEX IF NOT EXISTS {self._table}_embedding_hnsw
            ON {self._table} USING hnsw (embedding vector_cosine_ops);
        """
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cursor:
                cursor.execute(ddl)
            conn.commit()

    def get(self, content_hash: str) -> EmbeddingRecord | None:
        rows = self._fetch(
            f"SELECT content_hash, source_id, created_at, metadata, embedding::text AS embedding "
            f"FROM {self._table} WHERE content_hash = %s",
            [content_hash],
        )
        return self._row_to_record(rows[0]) if rows else None

    def existing(self, content_hashes: list[str]) -> set[str]:
        if not content_hashes:
            return set()
        rows = self._fetch(
            f"SELECT content_hash FROM {self._table} WHERE content_hash = ANY(%s)",
            [list(content_hashes)],
        )
        return {str(row["content_hash"]) for row in rows}

    def put_many(self, records: list[EmbeddingRecord]) -> list[EmbeddingRecord]:
        if not records:
            return []
        sql = (
            f"INSERT INTO {self._table} "
            f"(content_hash, source_id, created_at, metadata, embedding) "
            f"VALUES (%s, %s, %s, %s::jsonb, %s::vector) "
            f"ON CONFLICT (content_hash) DO NOTHING RETURNING content_hash"
        )
        inserted: list[EmbeddingRecord] = []
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cursor:
                for record in records:
                    cursor.execute(
                        sql,
                        [
                            record.content_hash,
                            record.source_id,
                            record.created_at,
                            json.dumps(record.metadata, sort_keys=True),
                            vector_literal(list(record.vector)),
                        ],
                    )
                    if cursor.fetchone() is not None:
                        inserted.append(record)
            conn.commit()
        return inserted

    def delete(self, content_hash: str) -> bool:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cursor:
                cursor.execute(f"DELETE FROM {self._table} WHERE content_hash = %s", [content_hash])
                deleted = cursor.rowcount > 0
            conn.commit()
        return deleted

    def all_records(self) -> list[EmbeddingRecord]:
        # The HNSW index serves searches; nothing to rebuild locally.
        return []

    def count(self) -> int:
        rows = self._fetch(f"SELECT COUNT(*) AS total FROM {self._table}", [])
        return int(rows[0]["total"]) if rows else 0

    def search(
        self, vector: list[float], k: int, filters: dict[str, str]
    ) -> list[tuple[EmbeddingRecord, float]]:
        if k < 1:
            return []
        query_vector = vector_literal(vector)
        where_clauses: list[str] = []
        params: list[Any] = []
        for key, value in sorted(filters.items()):
            where_clauses.append("metadata ->> %s = %s")
            params.extend([key, value])
        where_sql = ""
        if where_clauses:
            where_sql = "WHERE " + " AND ".join(where_clauses)

        sql = (
            f"SELECT content_hash, source_id, created_at, metadata, embedding::text AS embedding, "
            f"1 - (embedding <=> %s::vector) AS score "
            f"FROM {self._table} "
            f"{where_sql} "
            f"ORDER BY embedding <=> %s::vector "
            f"LIMIT %s"
        )
        rows = self._fetch(sql, [query_vector, *params, query_vector, k])
        return [(self._row_to_record(row), float(row.get("score", 0.0))) for row in rows]

    def _fetch(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                return list(cursor.fetchall())

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> EmbeddingRecord:
        raw_vector = str(row.get("embedding", "[]")).strip("[]")
        vector = tuple(float(value) for value in raw_vector.split(",") if value)
        metadata_raw = row.get("metadata")
        metadata = (
            {str(key): str(value) for key, value in metadata_raw.items()}
            if isinstance(metadata_raw, dict)
            else {}
        )
        return EmbeddingRecord(
            content_hash=str(row["content_hash"]),
            vector=vector,
            source_id=str(row.get("source_id", "")),
            created_at=float(row.get("created_at", 0.0)),
            metadata=metadata,
        )
