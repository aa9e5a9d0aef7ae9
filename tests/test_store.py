import struct

import numpy as np
import pytest

from bertnews.errors import StorageFailure
from bertnews.store import Store, decode_vector, encode_article_key, encode_vector


def test_vector_encoding_is_little_endian_float32():
    blob = encode_vector([1.0, -2.5])
    assert blob == struct.pack("<2f", 1.0, -2.5)
    assert decode_vector(blob, 2).tolist() == [1.0, -2.5]


def test_decode_rejects_wrong_length():
    with pytest.raises(ValueError):
        decode_vector(b"\x00" * 7, 2)


def test_article_keys_are_type_tagged():
    assert encode_article_key(5) == "i:5"
    assert encode_article_key("5") == "s:5"
    with pytest.raises(TypeError):
        encode_article_key(True)


def test_label_set_insert_is_first_writer_wins(store):
    assert store.insert_label_set("abc", ["Sport", "Tech"]) is True
    assert store.insert_label_set("abc", ["sport", "tech"]) is False
    assert store.get_label_set("abc") == ["Sport", "Tech"]
    assert store.get_label_set("missing") is None


def test_profiles_round_trip(store):
    assert store.get_profile("u1", "abc") is None
    store.put_profile("u1", "abc", {"Sport": 0.25})
    store.put_profile("u1", "abc", {"Sport": 0.5, "Tech": -0.1})
    assert store.get_profile("u1", "abc") == {"Sport": 0.5, "Tech": -0.1}
    assert store.get_profile("u2", "abc") is None


def test_article_upsert_and_lookup(store):
    vec = np.array([0.6, 0.8], dtype=np.float32)
    store.upsert_article("a1", "Title", "Desc", "https://x", vec, 1000)

    assert store.has_article("a1")
    assert not store.has_article("a2")
    record = store.get_article("a1")
    assert record.dim == 2
    assert np.allclose(record.vector, vec)
    assert (record.title, record.description, record.link, record.updated_at) == (
        "Title",
        "Desc",
        "https://x",
        1000,
    )
    assert store.get_article("a2") is None


def _corrupt(store, article_id):
    store._conn.execute(
        "UPDATE article_embeddings SET dim = 3 WHERE id = ?", (article_id,)
    )
    store._conn.commit()


def test_iter_articles_skips_corrupt_rows(store):
    store.upsert_article("good", "G", "", "", [1.0, 0.0], 1)
    store.upsert_article("bad", "B", "", "", [0.0, 1.0], 2)
    _corrupt(store, "bad")

    assert [a.id for a in store.iter_articles()] == ["good"]
    with pytest.raises(StorageFailure):
        store.get_article("bad")


def test_read_history_newest_first_with_metadata(store):
    store.upsert_article("a1", "First", "", "l1", [1.0], 1)
    store.upsert_article("a2", "Second", "", "l2", [1.0], 1)
    store.record_read_id("u1", "h", "a1", "like", 100)
    store.record_read_id("u1", "h", "a2", "dislike", 200)
    store.record_read_id("u2", "h", "a1", "like", 300)

    rows = store.read_history("u1")
    assert [r["article_id"] for r in rows] == ["a2", "a1"]
    assert rows[0]["title"] == "Second"
    assert rows[0]["feedback"] == "dislike"
    assert store.read_article_ids("u1") == {"a1", "a2"}


def test_read_record_upserts(store):
    store.record_read_index("u1", "h", 4, "like", 100)
    store.record_read_index("u1", "h", 4, "dislike", 200)
    store.record_read_index("u1", "h2", 9, "like", 300)
    assert store.read_indices("u1") == {4, 9}
    count = store._conn.execute("SELECT COUNT(*) FROM read_history").fetchone()[0]
    assert count == 2


def test_storage_errors_are_wrapped(tmp_path):
    s = Store(tmp_path / "db.sqlite")
    s.close()
    with pytest.raises(StorageFailure):
        s.get_profile("u1", "abc")


def test_store_persists_across_connections(tmp_path):
    path = tmp_path / "nested" / "app.db"
    with Store(path) as s:
        s.put_scores("abc", 3, {"Sport": 0.7})
    with Store(path) as s:
        assert s.get_scores("abc", 3) == {"Sport": 0.7}
        assert s.get_scores("abc", "3") is None
