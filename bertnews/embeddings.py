from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import numpy as np
from cachetools import LRUCache
from numpy.typing import NDArray

from bertnews.cache_utils import SingleFlight
from bertnews.constants import LABEL_EMBEDDING_CACHE_MAX_SETS
from bertnews.errors import UpstreamFailure
from bertnews.logging_config import get_logger
from bertnews.models import LabelSet

logger = get_logger(__name__)

type EmbedFn = Callable[[list[str]], NDArray[np.float32]]


async def embed_texts(embed_fn: EmbedFn, texts: Sequence[str]) -> NDArray[np.float32]:
    """Run the embedder off the event loop; failures become UpstreamFailure."""
    try:
        vectors = await asyncio.to_thread(embed_fn, list(texts))
    except Exception as e:
        logger.error("embedder_failed", error=str(e), n_texts=len(texts))
        raise UpstreamFailure(f"embedder failed: {e}") from e
    vectors = np.asarray(vectors, dtype=np.float32)
    if vectors.ndim != 2 or vectors.shape[0] != len(texts):
        raise UpstreamFailure(
            f"embedder returned shape {vectors.shape} for {len(texts)} texts"
        )
    return vectors


class LabelEmbeddingCache:
    """
    Label-set fingerprint -> (n_labels, dim) matrix in label-set order.

    Label text for a fingerprint is immutable, so entries are never
    invalidated; the LRU bound only limits how many label sets stay warm.
    """

    def __init__(self, maxsize: int = LABEL_EMBEDDING_CACHE_MAX_SETS) -> None:
        self._cache: LRUCache[str, NDArray[np.float32]] = LRUCache(maxsize=maxsize)
        self._flight: SingleFlight[str, NDArray[np.float32]] = SingleFlight()

    def __contains__(self, label_set_hash: str) -> bool:
        return label_set_hash in self._cache

    async def get(self, label_set: LabelSet, embed_fn: EmbedFn) -> NDArray[np.float32]:
        cached = self._cache.get(label_set.hash)
        if cached is not None:
            return cached

        async def fill() -> NDArray[np.float32]:
            vectors = await embed_texts(embed_fn, label_set.labels)
            self._cache[label_set.hash] = vectors
            logger.info(
                "label_embeddings_computed",
                label_set_hash=label_set.hash,
                n_labels=len(label_set.labels),
                dim=int(vectors.shape[1]),
            )
            return vectors

        return await self._flight.do(label_set.hash, fill)
