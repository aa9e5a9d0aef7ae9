"""Request-level operations: scoring, feedback, ranking, profile management."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping, Sequence
from functools import partial
from typing import Any

import numpy as np
from numpy.typing import NDArray

from bertnews.config import Settings
from bertnews.constants import DEFAULT_MIN_SCORE, DEFAULT_TOPK, FEEDBACK_MIN_SCORE
from bertnews.embeddings import EmbedFn, LabelEmbeddingCache
from bertnews.errors import BadRequest, NotFound
from bertnews.inference import init_classifier, init_embedder
from bertnews.labels import LabelSetRegistry
from bertnews.learner import clip_weight, feedback_sign, gate_by_direction, update_profile_gated
from bertnews.logging_config import get_logger
from bertnews.models import (
    ArticleInput,
    LabelSet,
    ProfileVector,
    RankedArticle,
    ReadItem,
    SparseCandidate,
)
from bertnews.rerank import Ranker
from bertnews.scoring import ScoreCache, article_text, sparsify
from bertnews.store import Store

logger = get_logger(__name__)

type ZeroShotFn = Callable[[str, list[str], bool], Mapping[str, float]]

AGGREGATION_METHODS = ("sum", "mean")


def _require(value: Any, name: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise BadRequest(f"{name} required")


class PersonalizationService:
    """
    Wires the label registry, score cache, learner and ranker to one store.

    `classifier_fn(text, labels, multi_label)` and `embed_fn(texts)` default
    to the local ONNX models, loaded on first use.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings | None = None,
        classifier_fn: ZeroShotFn | None = None,
        embed_fn: EmbedFn | None = None,
        ranker: Ranker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.registry = LabelSetRegistry(store)
        self.score_cache = ScoreCache(store, maxsize=self.settings.score_cache_size)
        self.label_embeddings = LabelEmbeddingCache(maxsize=self.settings.label_cache_size)
        self.ranker = ranker or Ranker(
            self.settings.gated,
            exploration_probability=self.settings.exploration_probability,
        )
        self._classifier_fn: ZeroShotFn = classifier_fn or self._local_classify
        self._embed_fn: EmbedFn = embed_fn or self._local_embed
        self._clock = clock

    def close(self) -> None:
        self.store.close()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _local_classify(self, text: str, labels: list[str], multi_label: bool) -> Mapping[str, float]:
        model = init_classifier(self.settings.classifier_model_dir)
        return model.classify(text, labels, multi_label=multi_label)

    def _local_embed(self, texts: list[str]) -> NDArray[np.float32]:
        return init_embedder(self.settings.embedding_model_dir).encode(texts)

    def _classifier(self, multi_label: bool) -> Callable[[str, list[str]], Mapping[str, float]]:
        return partial(_call_zero_shot, self._classifier_fn, multi_label=multi_label)

    # -- label sets & scoring ---------------------------------------------

    def register_labels(self, labels: Sequence[str]) -> dict[str, Any]:
        label_set = self.registry.register(labels)
        return {"labelSetHash": label_set.hash}

    async def score_batch(
        self,
        labels: Sequence[str],
        articles: Sequence[ArticleInput],
        multi_label: bool = True,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> dict[str, Any]:
        if not labels:
            raise BadRequest("labels required")
        if not articles:
            raise BadRequest("articles required")
        label_set = await asyncio.to_thread(self.registry.register, labels)
        classify = self._classifier(multi_label)

        results: list[dict[str, Any]] = []
        for article in articles:
            index = article.get("index")
            if index is None:
                raise BadRequest("article index required")
            scores = await self.score_cache.get_or_compute(
                label_set,
                int(index),
                article_text(article.get("title"), article.get("description")),
                min_score,
                classify,
            )
            results.append({"index": index, "scores": scores})
        return {"labelSetHash": label_set.hash, "results": results}

    # -- feedback ---------------------------------------------------------

    async def feedback(
        self,
        user_id: str,
        label_set_hash: str,
        article_id: str,
        feedback: str,
        alpha: float | None = None,
    ) -> dict[str, Any]:
        """
        Update the (user, label set) profile from a like/dislike.

        Scores are sparsified, then gated by label/article embedding
        alignment, before the gated update runs over every label.
        """
        _require(user_id, "user_id")
        _require(label_set_hash, "labelSetHash")
        _require(article_id, "article_id")
        y = feedback_sign(feedback)

        # 1. Resolve label set and article
        label_set = await asyncio.to_thread(self.registry.resolve, label_set_hash)
        article = await asyncio.to_thread(self.store.get_article, article_id)
        if article is None:
            raise NotFound(f"Unknown article_id: {article_id}")

        # 2. Classification scores (cached per label set + article id)
        scores = await self.score_cache.get_or_compute(
            label_set,
            article.id,
            article_text(article.title, article.description),
            FEEDBACK_MIN_SCORE,
            self._classifier(True),
        )

        # 3. Sparsify
        params = self.settings.gated.with_alpha(alpha)
        scores = sparsify(scores, params.tau, params.topk)

        # 4. Directional gate against the embedding space
        label_vectors = await self.label_embeddings.get(label_set, self._embed_fn)
        if label_vectors.shape[1] == article.dim:
            scores = gate_by_direction(
                scores, label_set.labels, label_vectors, article.vector, params.tau
            )
        else:
            logger.warning(
                "directional_gate_skipped",
                article_id=article.id,
                label_dim=int(label_vectors.shape[1]),
                article_dim=article.dim,
            )

        # 5-6. Gated update of the current (or empty) profile
        current = await asyncio.to_thread(self.store.get_profile, user_id, label_set.hash) or {}
        updated = update_profile_gated(current, scores, label_set.labels, y, params)

        # 7. Persist profile and read-history record
        await asyncio.to_thread(
            self._save_feedback, user_id, label_set.hash, updated, article.id, feedback
        )
        logger.info(
            "profile_updated",
            user_id=user_id,
            label_set_hash=label_set.hash,
            article_id=article.id,
            feedback=feedback,
        )
        return {"user_id": user_id, "labelSetHash": label_set.hash, "vector": updated}

    def _save_feedback(
        self,
        user_id: str,
        label_set_hash: str,
        vector: ProfileVector,
        article_id: str,
        feedback: str,
    ) -> None:
        self.store.put_profile(user_id, label_set_hash, vector)
        self.store.record_read_id(user_id, label_set_hash, article_id, feedback, self._now_ms())

    def mark_read(
        self, user_id: str, label_set_hash: str, index: int, feedback: str
    ) -> dict[str, Any]:
        _require(user_id, "user_id")
        _require(label_set_hash, "labelSetHash")
        feedback_sign(feedback)
        self.store.record_read_index(user_id, label_set_hash, int(index), feedback, self._now_ms())
        return {"user_id": user_id, "labelSetHash": label_set_hash, "index": index, "feedback": feedback}

    # -- ranking ----------------------------------------------------------

    def rank_sparse(
        self,
        user_id: str,
        label_set_hash: str,
        candidates: Sequence[SparseCandidate],
        topk: int = DEFAULT_TOPK,
        similarity: str = "dot",
    ) -> dict[str, Any]:
        _require(user_id, "user_id")
        _require(label_set_hash, "labelSetHash")
        if candidates is None:
            raise BadRequest("candidates required")
        profile = self.store.get_profile(user_id, label_set_hash)
        exclude = self.store.read_indices(user_id)
        items = self.ranker.rank_sparse(profile, candidates, exclude, topk, similarity)
        return {"items": [it.to_dict() for it in items]}

    async def rank_embeddings(
        self, user_id: str, label_set_hash: str, topk: int = DEFAULT_TOPK
    ) -> dict[str, Any]:
        _require(user_id, "user_id")
        _require(label_set_hash, "labelSetHash")
        label_set = await asyncio.to_thread(self.registry.resolve, label_set_hash)
        label_vectors = await self.label_embeddings.get(label_set, self._embed_fn)
        # Corpus decode and matrix product stay off the event loop
        items = await asyncio.to_thread(
            self._rank_corpus, user_id, label_set, label_vectors, topk
        )
        return {"items": [it.to_dict() for it in items]}

    def _rank_corpus(
        self,
        user_id: str,
        label_set: LabelSet,
        label_vectors: NDArray[np.float32],
        topk: int,
    ) -> list[RankedArticle]:
        profile = self.store.get_profile(user_id, label_set.hash)
        exclude = self.store.read_article_ids(user_id)
        articles = list(self.store.iter_articles())
        return self.ranker.rank_embeddings(
            profile, label_set.labels, label_vectors, articles, exclude, topk
        )

    # -- profile management -----------------------------------------------

    def migrate_profile(
        self,
        user_id: str,
        to_labels: Sequence[str],
        from_label_set_hash: str | None = None,
    ) -> dict[str, Any]:
        """Carry weights of shared labels to a new label set; new labels start at 0."""
        _require(user_id, "user_id")
        label_set = self.registry.register(to_labels)
        old: ProfileVector = {}
        if from_label_set_hash:
            old = self.store.get_profile(user_id, from_label_set_hash) or {}
        old_by_key = {label.lower(): float(w) for label, w in old.items()}
        vector: ProfileVector = {
            label: old_by_key.get(label.lower(), 0.0) for label in label_set.labels
        }
        self.store.put_profile(user_id, label_set.hash, vector)
        return {
            "user_id": user_id,
            "fromLabelSetHash": from_label_set_hash,
            "toLabelSetHash": label_set.hash,
            "vector": vector,
        }

    def aggregate_from_interactions(
        self,
        user_id: str,
        label_set_hash: str,
        interactions: Sequence[Mapping[str, Any]],
        method: str = "sum",
    ) -> dict[str, Any]:
        """Seed a profile from weighted score vectors, bypassing the gated learner."""
        _require(user_id, "user_id")
        _require(label_set_hash, "labelSetHash")
        if interactions is None:
            raise BadRequest("interactions required")
        if method not in AGGREGATION_METHODS:
            raise BadRequest(f"method must be one of {AGGREGATION_METHODS}, got {method!r}")
        label_set = self.registry.resolve(label_set_hash)
        allowed = set(label_set.labels)

        totals: dict[str, float] = {}
        for interaction in interactions:
            weight = interaction.get("weight")
            weight = 1.0 if weight is None else float(weight)
            for label, value in (interaction.get("scores") or {}).items():
                if label not in allowed:
                    continue
                totals[label] = totals.get(label, 0.0) + weight * float(value)
        if method == "mean" and interactions:
            totals = {label: v / len(interactions) for label, v in totals.items()}
        vector: ProfileVector = {label: clip_weight(v) for label, v in totals.items()}

        self.store.put_profile(user_id, label_set.hash, vector)
        return {"user_id": user_id, "labelSetHash": label_set.hash, "vector": vector}

    def read_list(self, user_id: str) -> dict[str, Any]:
        _require(user_id, "user_id")
        items: list[ReadItem] = []
        seen: set[str] = set()
        # Rows come newest first; keep the latest record per article
        for row in self.store.read_history(user_id):
            if row["article_id"] in seen:
                continue
            seen.add(row["article_id"])
            items.append(
                {
                    "id": row["article_id"],
                    "title": row["title"] or "",
                    "description": row["description"] or "",
                    "link": row["link"] or "",
                    "feedback": row["feedback"],
                    "ts": int(row["ts"]),
                }
            )
        return {"items": items}


def _call_zero_shot(
    fn: ZeroShotFn, text: str, labels: list[str], multi_label: bool
) -> Mapping[str, float]:
    return fn(text, labels, multi_label)
