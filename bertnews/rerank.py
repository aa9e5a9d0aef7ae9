"""Sparse label-score and dense embedding ranking with exploration."""

from __future__ import annotations

import math
import random
from collections.abc import Collection, Mapping, Sequence
from dataclasses import replace
from typing import Protocol

import numpy as np
from numpy.typing import NDArray
from sklearn.metrics.pairwise import cosine_similarity

from bertnews.config import GatedParams
from bertnews.constants import COLD_START_EMBEDDING_WEIGHT, EXPLORATION_PROBABILITY, SIMILARITY_MODES
from bertnews.errors import BadRequest
from bertnews.logging_config import get_logger
from bertnews.models import (
    ArticleRecord,
    EmbeddingExplanationEntry,
    ExplanationEntry,
    RankedArticle,
    RankedItem,
    SparseCandidate,
)
from bertnews.scoring import sparsify

logger = get_logger(__name__)


class RandomSource(Protocol):
    """Uniform draws used for exploration; `random.Random` satisfies it."""

    def random(self) -> float: ...

    def randrange(self, stop: int) -> int: ...


def dot_sim(profile: Mapping[str, float], scores: Mapping[str, float]) -> float:
    return sum(float(profile.get(label, 0.0)) * float(v) for label, v in scores.items())


def cosine_sim(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine over the union of labels (missing = 0); 0 if either norm is 0."""
    dot = na = nb = 0.0
    # Insertion order keeps the float sums independent of the hash seed
    for label in [*a, *(k for k in b if k not in a)]:
        x = float(a.get(label, 0.0))
        y = float(b.get(label, 0.0))
        dot += x * y
        na += x * x
        nb += y * y
    if na == 0.0 or nb == 0.0:
        return 0.0
    return dot / (math.sqrt(na) * math.sqrt(nb))


def build_user_embedding(
    labels: Sequence[str],
    label_vectors: NDArray[np.float32],
    profile: Mapping[str, float] | None,
) -> NDArray[np.float32]:
    """
    Weighted sum of label embeddings, L2-normalized (unless all-zero).
    Without a profile every label weighs 1.0.
    """
    if profile is None:
        weights = np.full(len(labels), COLD_START_EMBEDDING_WEIGHT, dtype=np.float32)
    else:
        weights = np.array([float(profile.get(label, 0.0)) for label in labels], dtype=np.float32)
    user_vec = (weights[:, None] * label_vectors).sum(axis=0).astype(np.float32)
    norm = float(np.linalg.norm(user_vec))
    if norm > 0:
        user_vec = user_vec / norm
    return user_vec


def _by_score_desc[T: (RankedItem, RankedArticle)](items: list[T]) -> list[T]:
    # sorted() is stable: equal scores keep candidate order
    return sorted(items, key=lambda it: -it.score)


class Ranker:
    def __init__(
        self,
        params: GatedParams | None = None,
        exploration_probability: float = EXPLORATION_PROBABILITY,
        rng: RandomSource | None = None,
    ) -> None:
        self.params = params or GatedParams()
        self.exploration_probability = exploration_probability
        self.rng: RandomSource = rng if rng is not None else random.Random()

    # -- sparse -----------------------------------------------------------

    def rank_sparse(
        self,
        profile: Mapping[str, float] | None,
        candidates: Sequence[SparseCandidate],
        exclude: Collection[int] = (),
        topk: int = 10,
        similarity: str = "dot",
    ) -> list[RankedItem]:
        """
        Rank candidates by their label scores against a profile.

        Without a profile (cold start) the score is the plain sum of label
        scores; otherwise the tau/topK-sparsified scores are combined with
        the profile by dot product or cosine similarity.
        """
        if similarity not in SIMILARITY_MODES:
            raise BadRequest(f"similarity must be one of {SIMILARITY_MODES}, got {similarity!r}")
        pool = [c for c in candidates if c.index not in exclude]
        if profile is None:
            scored = [self._score_cold(c) for c in pool]
        else:
            scored = [self._score_warm(profile, c, similarity) for c in pool]
        return self._select(_by_score_desc(scored), topk)

    def _score_cold(self, candidate: SparseCandidate) -> RankedItem:
        scores = candidate.scores or {}
        explanation: list[ExplanationEntry] = sorted(
            ({"label": label, "weight": float(v), "pref": 0.0} for label, v in scores.items()),
            key=lambda e: -e["weight"],
        )
        return RankedItem(
            index=candidate.index,
            score=float(sum(float(v) for v in scores.values())),
            explanation=explanation,
            cold_start=True,
        )

    def _score_warm(
        self, profile: Mapping[str, float], candidate: SparseCandidate, similarity: str
    ) -> RankedItem:
        tau = self.params.tau
        scores = candidate.scores or {}
        sparse = sparsify(scores, tau, self.params.topk)
        if similarity == "dot":
            score = dot_sim(profile, sparse)
        else:
            score = cosine_sim(profile, sparse)
        explanation: list[ExplanationEntry] = []
        for label, v in scores.items():
            pref = float(profile.get(label, 0.0))
            gated = float(v) if v >= tau else 0.0
            explanation.append({"label": label, "weight": pref * gated, "pref": pref})
        explanation.sort(key=lambda e: -abs(e["weight"]))
        return RankedItem(index=candidate.index, score=float(score), explanation=explanation)

    # -- embeddings -------------------------------------------------------

    def rank_embeddings(
        self,
        profile: Mapping[str, float] | None,
        labels: Sequence[str],
        label_vectors: NDArray[np.float32],
        articles: Sequence[ArticleRecord],
        exclude: Collection[str] = (),
        topk: int = 10,
    ) -> list[RankedArticle]:
        """
        Rank every stored article against a synthetic user embedding.

        Full corpus scan: one (n_articles, dim) matrix product, no ANN index.
        """
        dim = int(label_vectors.shape[1]) if label_vectors.ndim == 2 else 0
        pool = [a for a in articles if a.id not in exclude and a.dim == dim]
        skipped = sum(1 for a in articles if a.id not in exclude and a.dim != dim)
        if skipped:
            logger.warning("embedding_dim_mismatch", skipped=skipped, expected_dim=dim)
        if not pool:
            return []

        user_vec = build_user_embedding(labels, label_vectors, profile)
        matrix = np.vstack([a.vector for a in pool]).astype(np.float32)
        scores = matrix @ user_vec
        # (n_articles, n_labels)
        label_sims = cosine_similarity(matrix, label_vectors)
        if profile is None:
            prefs = [COLD_START_EMBEDDING_WEIGHT] * len(labels)
        else:
            prefs = [float(profile.get(label, 0.0)) for label in labels]

        tau = self.params.tau
        ranked: list[RankedArticle] = []
        for i, article in enumerate(pool):
            explanation: list[EmbeddingExplanationEntry] = []
            for j, label in enumerate(labels):
                sim = float(label_sims[i, j])
                gated = sim if abs(sim) >= tau else 0.0
                explanation.append(
                    {"label": label, "weight": prefs[j] * gated, "sim": sim, "pref": prefs[j]}
                )
            explanation.sort(key=lambda e: -abs(e["weight"]))
            ranked.append(
                RankedArticle(
                    id=article.id,
                    title=article.title,
                    description=article.description,
                    link=article.link,
                    score=float(scores[i]),
                    explanation=explanation,
                )
            )
        return self._select(_by_score_desc(ranked), topk)

    # -- selection --------------------------------------------------------

    def _select[T: (RankedItem, RankedArticle)](self, ranked: list[T], topk: int) -> list[T]:
        """
        Truncate to topk, then with probability p put one random item from
        the remainder in first position (the last selected item drops out).
        """
        topk = max(0, topk)
        top = ranked[:topk]
        remaining = ranked[topk:]
        if top and remaining and self.rng.random() < self.exploration_probability:
            pick = remaining[self.rng.randrange(len(remaining))]
            top = [replace(pick, exploration=True)] + top[: topk - 1]
            logger.info("exploration_spliced", pool=len(ranked), topk=topk)
        return top
