import pytest

from bertnews import constants


def test_gated_default_constants():
    """Guard learner defaults from accidental drift."""
    assert constants.GATED_ALPHA == pytest.approx(0.1)
    assert constants.GATED_TAU == pytest.approx(0.1)
    assert constants.GATED_DECAY == pytest.approx(0.01)
    assert constants.GATED_GAMMA == pytest.approx(2.0)
    assert constants.GATED_TOPK == 0


def test_ranking_and_storage_constants():
    assert constants.EXPLORATION_PROBABILITY == pytest.approx(0.05)
    assert constants.DEFAULT_TOPK == 10
    assert constants.LABEL_HASH_LENGTH == 16
    assert constants.VECTOR_DTYPE == "<f4"
    assert constants.PORT == 3000
