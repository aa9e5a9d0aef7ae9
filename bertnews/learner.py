"""Gated sparse online update of user preference vectors."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import numpy as np
from numpy.typing import NDArray
from sklearn.metrics.pairwise import cosine_similarity

from bertnews.config import GatedParams
from bertnews.constants import PROFILE_WEIGHT_MAX, PROFILE_WEIGHT_MIN
from bertnews.errors import BadRequest
from bertnews.models import ProfileVector, ScoreMap

FEEDBACK_SIGNS: dict[str, int] = {"like": 1, "dislike": -1}


def feedback_sign(feedback: str) -> int:
    try:
        return FEEDBACK_SIGNS[feedback]
    except KeyError:
        raise BadRequest(f"feedback must be 'like' or 'dislike', got {feedback!r}") from None


def clip_weight(value: float) -> float:
    return min(PROFILE_WEIGHT_MAX, max(PROFILE_WEIGHT_MIN, value))


def update_profile_gated(
    current: Mapping[str, float],
    scores: Mapping[str, float],
    labels: Sequence[str],
    y: int,
    params: GatedParams,
) -> ProfileVector:
    """
    Apply one feedback event to a preference vector.

    For every label l in `labels` (s clamped to [0, 1]):
      - s >= tau: u <- clip(u + alpha * y * s**gamma, -1, 1)
      - else:     u <- u * (1 - decay)
    Entries of `current` outside `labels` are carried over untouched.
    """
    out: ProfileVector = dict(current)
    for label in labels:
        u = float(out.get(label, 0.0))
        s = min(1.0, max(0.0, float(scores.get(label, 0.0) or 0.0)))
        if s >= params.tau:
            u = u + params.alpha * y * s**params.gamma
        else:
            u = u * (1.0 - params.decay)
        out[label] = clip_weight(u)
    return out


def gate_by_direction(
    scores: Mapping[str, float],
    labels: Sequence[str],
    label_vectors: NDArray[np.float32],
    article_vector: NDArray[np.float32],
    tau: float,
) -> ScoreMap:
    """
    Zero the score of every label whose embedding is not aligned with the
    article embedding (|cosine| < tau).
    """
    gated: ScoreMap = dict(scores)
    if len(labels) == 0:
        return gated
    sims = cosine_similarity(label_vectors, article_vector.reshape(1, -1))[:, 0]
    for label, sim in zip(labels, sims):
        if abs(float(sim)) < tau:
            gated[label] = 0.0
    return gated
