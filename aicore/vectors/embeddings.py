"""Vector helpers and the deterministic embedding used by the stub provider."""

import re
from hashlib import blake2b
from math import sqrt

_TOKEN_RE = re.compile(r"[a-z0-9]+")
BIGRAM_WEIGHT = 0.5


class HashEmbeddingGenerator:
    """Signed feature hashing of word unigrams and bigrams, unit-normalized.

    Identical texts map to identical vectors and texts sharing words get a
    positive cosine, which is all the stub needs to make search meaningful.
    """

    def __init__(self, embedding_dim: int):
        if embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        self._dim = embedding_dim

    @property
    def embedding_dim(self) -> int:
        return self._dim

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dim
        tokens = _TOKEN_RE.findall(text.lower())
        for token in tokens:
            self._add_feature(vector, token, 1.0)
        for left, right in zip(tokens, tokens[1:]):
            self._add_feature(vector, f"{left} {right}", BIGRAM_WEIGHT)
        return [round(value, 6) for value in normalize(vector)]

    def _add_feature(self, vector: list[float], feature: str, weight: float) -> None:
        digest = blake2b(feature.encode("utf-8"), digest_size=8).digest()
        slot = int.from_bytes(digest[:4], "big") % self._dim
        vector[slot] += weight if digest[4] & 1 else -weight


def norm(vector: list[float]) -> float:
    return sqrt(sum(value * value for value in vector))


def normalize(vector: list[float]) -> list[float]:
    length = norm(vector)
    if length == 0:
        return list(vector)
    return [value / length for value in vector]


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if len(left) != len(right):
        raise ValueError(f"dimension mismatch: {len(left)} != {len(right)}")
    denominator = norm(left) * norm(right)
    if denominator == 0:
        return 0.0
    return sum(a * b for a, b in zip(left, right, strict=True)) / denominator


def vector_literal(values: list[float]) -> str:
    """Render a vector in pgvector's text input format."""
    return "[" + ",".join(f"{value:.6f}" for value in values) + "]"
