"""SQLite persistence for budgets, cache entries, rate buckets, provider health and embeddings.

All stores share one database file; each opens a short-lived connection per
operation so they are safe to call from worker threads.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from aicore.budget.tracker import Budget
from aicore.cache.response_cache import CacheEntry
from aicore.core.types import Operation
from aicore.limits.rate_limiter import RateBucket
from aicore.providers.circuit_breaker import BreakerState, ProviderHealth
from aicore.vectors.store import EmbeddingRecord

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS budgets (
        tenant_id TEXT NOT NULL,
        period TEXT NOT NULL,
        limit_cents REAL NOT NULL,
        spent_cents REAL NOT NULL,
        alert_thresholds TEXT NOT NULL,
        last_alerted_threshold REAL NOT NULL,
        daily_json TEXT NOT NULL,
        PRIMARY KEY (tenant_id, period)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_entries (
        fingerprint TEXT PRIMARY KEY,
        operation TEXT NOT NULL,
        result_json TEXT NOT NULL,
        provider_used TEXT NOT NULL,
        created_at REAL NOT NULL,
        expires_at REAL NOT NULL,
        hit_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_cache_entries_expires_at
    ON cache_entries(expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_buckets (
        key TEXT PRIMARY KEY,
        capacity REAL NOT NULL,
        tokens REAL NOT NULL,
        last_refill_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_health (
        provider_id TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        consecutive_failures INTEGER NOT NULL,
        consecutive_successes INTEGER NOT NULL,
        opened_at REAL,
        last_failure_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS embedding_records (
        content_hash TEXT PRIMARY KEY,
        source_id TEXT NOT NULL,
        created_at REAL NOT NULL,
        metadata_json TEXT NOT NULL,
        vector_json TEXT NOT NULL
    )
    """,
)


@dataclass
class _SQLiteStore:
    path: Path

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as connection:
            for statement in _SCHEMA:
                connection.execute(statement)
            connection.commit()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.path), timeout=30.0)
        connection.row_factory = sqlite3.Row
        return connection


@dataclass
class SQLiteBudgetStore(_SQLiteStore):
    def load_budget(self, tenant_id: str, period: str) -> Budget | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM budgets WHERE tenant_id = ? AND period = ?",
                (tenant_id, period),
            ).fetchone()
        if row is None:
            return None
        thresholds = tuple(float(item) for item in row["alert_thresholds"].split(",") if item)
        return Budget(
            tenant_id=row["tenant_id"],
            period=row["period"],
            limit_cents=float(row["limit_cents"]),
            spent_cents=float(row["spent_cents"]),
            alert_thresholds=thresholds or (0.8, 1.0),
            last_alerted_threshold=float(row["last_alerted_threshold"]),
            daily_spent_cents={
                str(day): float(cents) for day, cents in json.loads(row["daily_json"]).items()
            },
        )

    def save_budget(self, budget: Budget) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO budgets (
                    tenant_id,
                    period,
                    limit_cents,
                    spent_cents,
                    alert_thresholds,
                    last_alerted_threshold,
                    daily_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, period) DO UPDATE SET
                    limit_cents = excluded.limit_cents,
                    spent_cents = excluded.spent_cents,
                    alert_thresholds = excluded.alert_thresholds,
                    last_alerted_threshold = excluded.last_alerted_threshold,
                    daily_json = excluded.daily_json
                """,
                (
                    budget.tenant_id,
                    budget.period,
                    budget.limit_cents,
                    budget.spent_cents,
                    ",".join(repr(item) for item in budget.alert_thresholds),
                    budget.last_alerted_threshold,
                    json.dumps(budget.daily_spent_cents, sort_keys=True),
                ),
            )
            connection.commit()


@dataclass
class SQLiteCacheBackend(_SQLiteStore):
    def get(self, fingerprint: str) -> CacheEntry | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM cache_entries WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(
            fingerprint=row["fingerprint"],
            operation=Operation(row["operation"]),
            result=json.loads(row["result_json"]),
            provider_used=row["provider_used"],
            created_at=float(row["created_at"]),
            expires_at=float(row["expires_at"]),
            hit_count=int(row["hit_count"]),
        )

    def put(self, entry: CacheEntry) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT OR REPLACE INTO cache_entries (
                    fingerprint,
                    operation,
                    result_json,
                    provider_used,
                    created_at,
                    expires_at,
                    hit_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.fingerprint,
                    entry.operation.value,
                    json.dumps(entry.result, ensure_ascii=True),
                    entry.provider_used,
                    entry.created_at,
                    entry.expires_at,
                    entry.hit_count,
                ),
            )
            connection.commit()

    def delete(self, fingerprint: str) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM cache_entries WHERE fingerprint = ?", (fingerprint,)
            )
            connection.commit()
        return int(cursor.rowcount or 0) > 0

    def keys(self) -> list[tuple[str, Operation]]:
        with self._connect() as connection:
            rows = connection.execute("SELECT fingerprint, operation FROM cache_entries").fetchall()
        return [(row["fingerprint"], Operation(row["operation"])) for row in rows]

    def prune_expired(self, now: float) -> int:
        with self._connect() as connection:
            cursor = connection.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (now,))
            connection.commit()
        return int(cursor.rowcount or 0)

    def __len__(self) -> int:
        with self._connect() as connection:
            row = connection.execute("SELECT COUNT(*) AS total FROM cache_entries").fetchone()
        return int(row["total"])


@dataclass
class SQLiteBucketStore(_SQLiteStore):
    def load_bucket(self, key: str) -> RateBucket | None:
        with self._connect() as connection:
            row = connection.execute("SELECT * FROM rate_buckets WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return RateBucket(
            key=row["key"],
            capacity=float(row["capacity"]),
            tokens=float(row["tokens"]),
            last_refill_at=float(row["last_refill_at"]),
        )

    def save_bucket(self, bucket: RateBucket) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO rate_buckets (key, capacity, tokens, last_refill_at) "
                "VALUES (?, ?, ?, ?)",
                (bucket.key, bucket.capacity, bucket.tokens, bucket.last_refill_at),
            )
            connection.commit()


@dataclass
class SQLiteProviderHealthStore(_SQLiteStore):
    def load_all(self) -> list[ProviderHealth]:
        with self._connect() as connection:
            rows = connection.execute("SELECT * FROM provider_health").fetchall()
        return [
            ProviderHealth(
                provider_id=row["provider_id"],
                state=BreakerState(row["state"]),
                consecutive_failures=int(row["consecutive_failures"]),
                consecutive_successes=int(row["consecutive_successes"]),
                opened_at=row["opened_at"],
                last_failure_at=row["last_failure_at"],
            )
            for row in rows
        ]

    def save(self, health: ProviderHealth) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT OR REPLACE INTO provider_health (
                    provider_id,
                    state,
                    consecutive_failures,
                    consecutive_successes,
                    opened_at,
                    last_failure_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    health.provider_id,
                    health.state.value,
                    health.consecutive_failures,
                    health.consecutive_successes,
                    health.opened_at,
                    health.last_failure_at,
                ),
            )
            connection.commit()


@dataclass
class SQLiteEmbeddingStore(_SQLiteStore):
    def get(self, content_hash: str) -> EmbeddingRecord | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM embedding_records WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def existing(self, content_hashes: list[str]) -> set[str]:
        found: set[str] = set()
        if not content_hashes:
            return found
        with self._connect() as connection:
            # Stay under SQLite's bound-parameter limit.
            for start in range(0, len(content_hashes), 500):
                chunk = content_hashes[start : start + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows = connection.execute(
                    f"SELECT content_hash FROM embedding_records "
                    f"WHERE content_hash IN ({placeholders})",
                    tuple(chunk),
                ).fetchall()
                found.update(row["content_hash"] for row in rows)
        return found

    def put_many(self, records: list[EmbeddingRecord]) -> list[EmbeddingRecord]:
        inserted: list[EmbeddingRecord] = []
        with self._connect() as connection:
            for record in records:
                cursor = connection.execute(
                    """
                    INSERT OR IGNORE INTO embedding_records (
                        content_hash,
                        source_id,
                        created_at,
                        metadata_json,
                        vector_json
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        record.content_hash,
                        record.source_id,
                        record.created_at,
                        json.dumps(record.metadata, sort_keys=True),
                        json.dumps(list(record.vector)),
                    ),
                )
                if cursor.rowcount:
                    inserted.append(record)
            connection.commit()
        return inserted

    def delete(self, content_hash: str) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM embedding_records WHERE content_hash = ?", (content_hash,)
            )
            connection.commit()
        return int(cursor.rowcount or 0) > 0

    def all_records(self) -> list[EmbeddingRecord]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM embedding_records ORDER BY created_at ASC"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._connect() as connection:
            row = connection.execute("SELECT COUNT(*) AS total FROM embedding_records").fetchone()
        return int(row["total"])

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EmbeddingRecord:
        return EmbeddingRecord(
            content_hash=row["content_hash"],
            vector=tuple(float(value) for value in json.loads(row["vector_json"])),
            source_id=row["source_id"],
            created_at=float(row["created_at"]),
            metadata={str(k): str(v) for k, v in json.loads(row["metadata_json"]).items()},
        )
