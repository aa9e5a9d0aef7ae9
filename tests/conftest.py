import hashlib
import itertools
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from bertnews import inference
from bertnews.config import GatedParams, Settings
from bertnews.rerank import Ranker
from bertnews.service import PersonalizationService
from bertnews.store import Store

EMB_DIM = 8


def unit(vec):
    vec = np.asarray(vec, dtype=np.float32)
    return vec / np.linalg.norm(vec)


def hashed_vector(text: str, dim: int = EMB_DIM) -> np.ndarray:
    seed = int(hashlib.sha256(text.encode()).hexdigest()[:8], 16)
    return unit(np.random.default_rng(seed).standard_normal(dim))


class FakeClassifier:
    """Scores 0.9 for labels mentioned in the text, 0.02 otherwise."""

    def __init__(self):
        self.calls = []

    def __call__(self, text, labels, multi_label=True):
        self.calls.append((text, list(labels), multi_label))
        lowered = text.lower()
        return {label: (0.9 if label.lower() in lowered else 0.02) for label in labels}


class FakeEmbedder:
    """Deterministic unit vectors; `vectors` pins specific texts."""

    def __init__(self, vectors=None):
        self.vectors = dict(vectors or {})
        self.calls = []

    def __call__(self, texts):
        self.calls.append(list(texts))
        return np.vstack([self.vectors.get(t, hashed_vector(t)) for t in texts]).astype(np.float32)


class StubRandom:
    """Random source with scripted draws."""

    def __init__(self, draw=0.0, index=0):
        self.draw = draw
        self.index = index
        self.randrange_calls = []

    def random(self):
        return self.draw

    def randrange(self, stop):
        self.randrange_calls.append(stop)
        return self.index % stop


@pytest.fixture(autouse=True)
def mock_onnx_models():
    """
    Mock the ONNX model classes for all tests so no model directory or
    runtime session is ever loaded.
    """
    inference._embedder = None
    inference._classifier = None
    with (
        patch("bertnews.inference.ONNXEmbeddingModel") as MockEmbedder,
        patch("bertnews.inference.ONNXZeroShotClassifier") as MockClassifier,
    ):
        embedder = MagicMock()
        embedder.encode.side_effect = lambda texts, **kwargs: np.vstack(
            [hashed_vector(t) for t in texts]
        ) if texts else np.array([], dtype=np.float32)
        MockEmbedder.return_value = embedder

        classifier = MagicMock()
        classifier.classify.side_effect = FakeClassifier()
        MockClassifier.return_value = classifier
        yield embedder, classifier
    inference._embedder = None
    inference._classifier = None


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "app.db")
    yield s
    s.close()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def settings():
    return Settings(exploration_probability=0.0)


@pytest.fixture
def service(store, settings, classifier, embedder):
    ticks = itertools.count(1_700_000_000)
    return PersonalizationService(
        store,
        settings,
        classifier_fn=classifier,
        embed_fn=embedder,
        ranker=Ranker(GatedParams(), exploration_probability=0.0),
        clock=lambda: float(next(ticks)),
    )
