"""Typed data models for news personalization."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, TypedDict

import numpy as np
from numpy.typing import NDArray

type Feedback = Literal["like", "dislike"]
type ArticleKey = int | str  # batch index or stored article id
type ProfileVector = dict[str, float]
type ScoreMap = dict[str, float]


class ExplanationEntry(TypedDict):
    """How much one label contributed to a ranking score."""

    label: str
    weight: float  # Contribution to the score
    pref: float  # Profile weight used for the contribution


class EmbeddingExplanationEntry(ExplanationEntry):
    sim: float  # Raw label/article similarity before gating


class ArticleInput(TypedDict):
    """Article payload of a batch scoring request."""

    index: int
    title: str | None
    description: str | None


class ReadItem(TypedDict):
    id: str
    title: str
    description: str
    link: str
    feedback: Feedback
    ts: int


@dataclass(frozen=True)
class LabelSet:
    """Canonical labels and their fingerprint."""

    hash: str
    labels: tuple[str, ...]


@dataclass
class SparseCandidate:
    """A ranking candidate with precomputed label scores."""

    index: int
    scores: ScoreMap = field(default_factory=dict)


@dataclass
class ArticleRecord:
    """A stored article with its unit-normalized embedding."""

    id: str
    title: str
    description: str
    link: str
    vector: NDArray[np.float32]
    updated_at: int = 0

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])


@dataclass
class RankedItem:
    """Result of sparse (label-score) ranking for one candidate."""

    index: int
    score: float
    explanation: list[ExplanationEntry]
    cold_start: bool = False
    exploration: bool = False

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "index": self.index,
            "score": self.score,
            "explanation": self.explanation,
        }
        if self.cold_start:
            out["cold_start"] = True
        if self.exploration:
            out["exploration"] = True
        return out


@dataclass
class RankedArticle:
    """Result of embedding ranking for one stored article."""

    id: str
    title: str
    description: str
    link: str
    score: float
    explanation: list[EmbeddingExplanationEntry]
    exploration: bool = False

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "score": self.score,
            "explanation": self.explanation,
        }
        if self.exploration:
            out["exploration"] = True
        return out
