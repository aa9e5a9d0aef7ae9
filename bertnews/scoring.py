"""Classification scores: two-tier memoization and sparsification."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Mapping, Sequence

from cachetools import LRUCache

from bertnews.cache_utils import SingleFlight
from bertnews.constants import ARTICLE_TEXT_SEPARATOR, GATED_TAU, GATED_TOPK, SCORE_CACHE_MAX_ENTRIES
from bertnews.errors import UpstreamFailure
from bertnews.logging_config import get_logger
from bertnews.models import ArticleKey, LabelSet, ScoreMap
from bertnews.store import Store

logger = get_logger(__name__)

type ClassifierFn = Callable[[str, list[str]], Mapping[str, float]]


def article_text(title: str | None, description: str | None) -> str:
    return ARTICLE_TEXT_SEPARATOR.join(part for part in (title, description) if part)


def sparsify(
    scores: Mapping[str, float] | None,
    tau: float = GATED_TAU,
    topk: int = GATED_TOPK,
) -> ScoreMap:
    """
    Keep labels with |score| >= tau; if topk > 0, keep only the topk
    largest magnitudes. Ties keep input order (stable sort).
    """
    if not scores:
        return {}
    entries = [(label, float(v or 0.0)) for label, v in scores.items()]
    entries = [(label, v) for label, v in entries if abs(v) >= tau]
    if topk > 0 and len(entries) > topk:
        entries.sort(key=lambda e: abs(e[1]), reverse=True)
        entries = entries[:topk]
    return dict(entries)


class ScoreCache:
    """
    Classifier output memoized per (label set, article).

    Lookup order is the in-process LRU, then the persistent store, then the
    classifier. Concurrent misses on one key share a single classifier call.
    Store reads and writes run in worker threads, so the LRU is locked.
    """

    def __init__(self, store: Store, maxsize: int = SCORE_CACHE_MAX_ENTRIES) -> None:
        self.store = store
        self._memory: LRUCache[tuple[str, ArticleKey], ScoreMap] = LRUCache(maxsize=maxsize)
        self._lock = threading.Lock()
        self._flight: SingleFlight[tuple[str, ArticleKey], ScoreMap] = SingleFlight()

    def _remembered(self, key: tuple[str, ArticleKey]) -> ScoreMap | None:
        with self._lock:
            cached = self._memory.get(key)
        return dict(cached) if cached is not None else None

    def _remember(self, key: tuple[str, ArticleKey], scores: ScoreMap) -> None:
        with self._lock:
            self._memory[key] = scores

    def peek(self, label_set_hash: str, article_key: ArticleKey) -> ScoreMap | None:
        """Memory then store lookup. Blocking: call from a worker thread."""
        key = (label_set_hash, article_key)
        cached = self._remembered(key)
        if cached is not None:
            return cached
        stored = self.store.get_scores(label_set_hash, article_key)
        if stored is None:
            return None
        logger.debug("score_cache_store_hit", label_set_hash=label_set_hash, article_key=article_key)
        self._remember(key, stored)
        return dict(stored)

    async def get_or_compute(
        self,
        label_set: LabelSet,
        article_key: ArticleKey,
        text: str,
        min_score: float,
        classifier_fn: ClassifierFn,
    ) -> ScoreMap:
        key = (label_set.hash, article_key)
        cached = self._remembered(key)
        if cached is None:
            cached = await asyncio.to_thread(self.peek, label_set.hash, article_key)
        if cached is not None:
            return cached

        async def fill() -> ScoreMap:
            scores = await _classify(classifier_fn, text, list(label_set.labels))
            kept = {label: float(s) for label, s in scores.items() if s >= min_score}
            self._remember(key, kept)
            await asyncio.to_thread(self.store.put_scores, label_set.hash, article_key, kept)
            logger.debug(
                "score_cache_fill",
                label_set_hash=label_set.hash,
                article_key=article_key,
                labels_kept=len(kept),
            )
            return kept

        return dict(await self._flight.do(key, fill))


async def _classify(classifier_fn: ClassifierFn, text: str, labels: Sequence[str]) -> Mapping[str, float]:
    try:
        return await asyncio.to_thread(classifier_fn, text, list(labels))
    except Exception as e:
        logger.error("classifier_failed", error=str(e), labels=list(labels))
        raise UpstreamFailure(f"classifier failed: {e}") from e
