"""Label-set canonicalization, fingerprinting and registry."""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Sequence

from cachetools import LRUCache

from bertnews.constants import LABEL_HASH_LENGTH, LABEL_JOIN_SEPARATOR, LABEL_SET_CACHE_MAX_ENTRIES
from bertnews.errors import BadRequest, NotFound
from bertnews.logging_config import get_logger
from bertnews.models import LabelSet
from bertnews.store import Store

logger = get_logger(__name__)


def canonical_labels(labels: Sequence[str]) -> list[str]:
    """
    Trim labels and drop case-insensitive duplicates, keeping the first
    spelling seen. Raises BadRequest for an empty sequence or blank label.
    """
    if isinstance(labels, str) or not labels:
        raise BadRequest("labels required")
    out: list[str] = []
    seen: set[str] = set()
    for raw in labels:
        if not isinstance(raw, str):
            raise BadRequest(f"label must be a string, got {type(raw).__name__}")
        label = raw.strip()
        if not label:
            raise BadRequest("labels must not be blank")
        key = label.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(label)
    return out


def fingerprint(labels: Sequence[str]) -> str:
    """Order-, case- and whitespace-insensitive label-set id."""
    norm = LABEL_JOIN_SEPARATOR.join(sorted(label.lower() for label in canonical_labels(labels)))
    return hashlib.sha256(norm.encode()).hexdigest()[:LABEL_HASH_LENGTH]


class LabelSetRegistry:
    def __init__(self, store: Store, maxsize: int = LABEL_SET_CACHE_MAX_ENTRIES) -> None:
        self.store = store
        # Label text for a fingerprint never changes once persisted
        self._cache: LRUCache[str, LabelSet] = LRUCache(maxsize=maxsize)
        # Called from worker threads and the event loop alike
        self._lock = threading.Lock()

    def _cached(self, label_set_hash: str) -> LabelSet | None:
        with self._lock:
            return self._cache.get(label_set_hash)

    def register(self, labels: Sequence[str]) -> LabelSet:
        canonical = canonical_labels(labels)
        label_set_hash = fingerprint(canonical)
        cached = self._cached(label_set_hash)
        if cached is not None:
            return cached
        if self.store.insert_label_set(label_set_hash, canonical):
            logger.info("label_set_registered", label_set_hash=label_set_hash, labels=canonical)
        # Another caller may have registered a different spelling first
        return self.resolve(label_set_hash)

    def resolve(self, label_set_hash: str) -> LabelSet:
        cached = self._cached(label_set_hash)
        if cached is not None:
            return cached
        labels = self.store.get_label_set(label_set_hash)
        if labels is None:
            raise NotFound(f"Unknown labelSetHash: {label_set_hash}")
        label_set = LabelSet(hash=label_set_hash, labels=tuple(labels))
        with self._lock:
            self._cache[label_set_hash] = label_set
        return label_set
