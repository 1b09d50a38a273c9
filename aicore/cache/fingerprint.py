"""Stable content hashes for cache and dedup keys."""

import json
import re
from dataclasses import dataclass
from hashlib import sha256
from typing import Any

from aicore.core.types import Operation

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class NormalizationRule:
    strip: bool = True
    collapse_whitespace: bool = True
    lowercase: bool = False

    def apply(self, text: str) -> str:
        if self.collapse_whitespace:
            text = _WHITESPACE_RE.sub(" ", text)
        if self.strip:
            text = text.strip()
        if self.lowercase:
            text = text.lower()
        return text


DEFAULT_RULE = NormalizationRule()


class Fingerprinter:
    """Derives a SHA-256 fingerprint from operation, payload and model params.

    Strings are normalized with the operation's rule before hashing so that
    requests differing only in whitespace (or casing, where the operation is
    configured case-insensitive) collapse to one key.
    """

    def __init__(self, rules: dict[Operation, NormalizationRule] | None = None):
        self._rules = dict(rules) if rules else {}

    @classmethod
    def with_case_insensitive(cls, operations: set[Operation]) -> "Fingerprinter":
        return cls({op: NormalizationRule(lowercase=True) for op in operations})

    def rule_for(self, operation: Operation) -> NormalizationRule:
        return self._rules.get(operation, DEFAULT_RULE)

    def normalize(self, operation: Operation, value: Any) -> Any:
        rule = self.rule_for(operation)
        return _normalize_value(value, rule)

    def fingerprint(
        self,
        operation: Operation,
        payload: Any,
        model_params: dict[str, Any] | None = None,
    ) -> str:
        canonical = {
            "operation": operation.value,
            "payload": self.normalize(operation, payload),
            "params": _normalize_value(model_params or {}, NormalizationRule(lowercase=False)),
        }
        serialized = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        return sha256(serialized.encode("utf-8")).hexdigest()

    def content_hash(self, text: str, model: str) -> str:
        """Hash used to deduplicate embedding inputs."""
        return self.fingerprint(Operation.EMBED, {"text": text}, {"model": model})


def _normalize_value(value: Any, rule: NormalizationRule) -> Any:
    if isinstance(value, str):
        return rule.apply(value)
    if isinstance(value, dict):
        return {
            str(key): _normalize_value(item, rule)
            for key, item in sorted(value.items(), key=lambda kv: str(kv[0]))
            if item is not None
        }
    if isinstance(value, list | tuple):
        return [_normalize_value(item, rule) for item in value]
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value
