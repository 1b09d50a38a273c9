"""
Approximate nearest-neighbour index
===================================

Random-hyperplane LSH over cosine similarity.

  - ``tables`` independent hash tables, each keyed by a ``bits``-bit signature
    (one bit per hyperplane: which side of the plane the vector falls on).
  - Queries probe the exact bucket plus every bucket one bit-flip away in
    each table, then re-rank the union of candidates exactly.
  - Below ``brute_force_below`` vectors, or when probing yields fewer than
    ``k`` candidates, the index falls back to an exact scan.
"""

import random
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

from aicore.vectors.embeddings import cosine_similarity


@dataclass(frozen=True)
class SearchFilters:
    date_from: float | None = None
    date_to: float | None = None
    author_id: str | None = None
    channel_id: str | None = None

    def is_empty(self) -> bool:
        return (
            self.date_from is None
            and self.date_to is None
            and self.author_id is None
            and self.channel_id is None
        )

    def matches(self, created_at: float, metadata: dict[str, str]) -> bool:
        if self.date_from is not None and created_at < self.date_from:
            return False
        if self.date_to is not None and created_at > self.date_to:
            return False
        if self.author_id is not None and metadata.get("author_id") != self.author_id:
            return False
        if self.channel_id is not None and metadata.get("channel_id") != self.channel_id:
            return False
        return True

    def metadata_equals(self) -> dict[str, str]:
        result: dict[str, str] = {}
        if self.author_id is not None:
            result["author_id"] = self.author_id
        if self.channel_id is not None:
            result["channel_id"] = self.channel_id
        return result


class LSHIndex:
    def __init__(
        self,
        dim: int,
        tables: int = 6,
        bits: int = 10,
        seed: int = 7,
        brute_force_below: int = 256,
    ) -> None:
        if dim < 1:
            raise ValueError("dim must be >= 1")
        if tables < 1 or bits < 1:
            raise ValueError("tables and bits must be >= 1")
        rng = random.Random(seed)
        self._dim = dim
        self._bits = bits
        self._brute_force_below = brute_force_below
        self._planes = [
            [[rng.gauss(0.0, 1.0) for _ in range(dim)] for _ in range(bits)] for _ in range(tables)
        ]
        self._buckets: list[dict[int, set[str]]] = [defaultdict(set) for _ in range(tables)]
        self._vectors: dict[str, list[float]] = {}
        self._signatures: dict[str, list[int]] = {}
        self._lock = threading.Lock()

    @property
    def dim(self) -> int:
        return self._dim

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, key: object) -> bool:
        return key in self._vectors

    def add(self, key: str, vector: list[float]) -> None:
        if len(vector) != self._dim:
            raise ValueError(f"expected dimension {self._dim}, got {len(vector)}")
        signatures = [self._signature(planes, vector) for planes in self._planes]
        with self._lock:
            if key in self._vectors:
                return
            self._vectors[key] = list(vector)
            self._signatures[key] = signatures
            for table, signature in zip(self._buckets, signatures, strict=True):
                table[signature].add(key)

    def remove(self, key: str) -> bool:
        with self._lock:
            if key not in self._vectors:
                return False
            del self._vectors[key]
            for table, signature in zip(self._buckets, self._signatures.pop(key), strict=True):
                bucket = table.get(signature)
                if bucket is not None:
                    bucket.discard(key)
                    if not bucket:
                        del table[signature]
            return True

    def query(
        self,
        vector: list[float],
        k: int,
        accept: Callable[[str], bool] | None = None,
    ) -> list[tuple[str, float]]:
        """Return up to *k* ``(key, cosine)`` pairs, best first."""
        if k < 1:
            return []
        if len(vector) != self._dim:
            raise ValueError(f"expected dimension {self._dim}, got {len(vector)}")
        with self._lock:
            if len(self._vectors) < self._brute_force_below:
                candidates = set(self._vectors)
            else:
                candidates = self._probe(vector)
            if accept is not None:
                candidates = {key for key in candidates if accept(key)}
            if len(candidates) < k:
                candidates = {key for key in self._vectors if accept is None or accept(key)}
            scored = [(key, cosine_similarity(vector, self._vectors[key])) for key in candidates]
        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        return scored[:k]

    def _probe(self, vector: list[float]) -> set[str]:
        candidates: set[str] = set()
        for planes, table in zip(self._planes, self._buckets, strict=True):
            signature = self._signature(planes, vector)
            candidates |= table.get(signature, set())
            for bit in range(self._bits):
                candidates |= table.get(signature ^ (1 << bit), set())
        return candidates

    @staticmethod
    def _signature(planes: list[list[float]], vector: list[float]) -> int:
        signature = 0
        for bit, plane in enumerate(planes):
            if sum(p * v for p, v in zip(plane, vector, strict=True)) >= 0:
                signature |= 1 << bit
        return signature
