import hashlib
from concurrent.futures import ThreadPoolExecutor

import pytest
from hypothesis import given, strategies as st

from bertnews.errors import BadRequest, NotFound
from bertnews.labels import LabelSetRegistry, canonical_labels, fingerprint

label_text = st.text(alphabet="abcdefghijklmnopqrstuvwxyz ", min_size=1, max_size=12).filter(
    lambda s: s.strip()
)


def test_fingerprint_matches_sha256_prefix():
    expected = hashlib.sha256("sport|tech".encode()).hexdigest()[:16]
    assert fingerprint(["Tech", "Sport"]) == expected
    assert len(expected) == 16


def test_fingerprint_ignores_order_case_and_whitespace():
    assert fingerprint(["Sport", "Tech"]) == fingerprint([" tech ", "SPORT"])


def test_fingerprint_differs_for_different_sets():
    assert fingerprint(["Sport", "Tech"]) != fingerprint(["Sport", "War"])


@given(st.lists(label_text, min_size=1, max_size=6, unique_by=lambda s: s.strip().lower()))
def test_fingerprint_permutation_invariant(labels):
    assert fingerprint(labels) == fingerprint(list(reversed(labels)))
    assert fingerprint(labels) == fingerprint([s.upper() for s in labels])


def test_canonical_labels_trims_and_dedupes():
    assert canonical_labels([" Sport", "Tech", "sport ", "TECH"]) == ["Sport", "Tech"]


@pytest.mark.parametrize("labels", [[], ["Sport", "   "], "Sport", ["Sport", 3]])
def test_canonical_labels_rejects_invalid(labels):
    with pytest.raises(BadRequest):
        canonical_labels(labels)


def test_fingerprint_of_empty_set_fails():
    with pytest.raises(BadRequest):
        fingerprint([])


def test_register_is_idempotent(store):
    registry = LabelSetRegistry(store)
    first = registry.register(["Sport", "Tech"])
    second = registry.register(["tech", "sport"])
    assert first.hash == second.hash
    # First spelling wins
    assert second.labels == ("Sport", "Tech")


def test_register_persists_across_registries(store):
    label_set = LabelSetRegistry(store).register(["Economy", "Climate"])
    resolved = LabelSetRegistry(store).resolve(label_set.hash)
    assert resolved == label_set


def test_resolve_unknown_hash(store):
    registry = LabelSetRegistry(store)
    with pytest.raises(NotFound, match="Unknown labelSetHash"):
        registry.resolve("deadbeefdeadbeef")


def test_concurrent_register_agrees_on_one_spelling(store):
    registry = LabelSetRegistry(store, maxsize=4)
    spellings = [["Sport", "Tech"], ["tech", "SPORT"], [" Tech ", "sport"], ["SPORT", "TECH"]] * 8
    others = [[f"Topic{i}", "Tech"] for i in range(8)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(registry.register, spellings + others))

    same = results[: len(spellings)]
    assert len({ls.hash for ls in same}) == 1
    assert len({ls.labels for ls in same}) == 1
    assert list(same[0].labels) == store.get_label_set(same[0].hash)
    assert len({ls.hash for ls in results[len(spellings):]}) == len(others)
