"""SQLite-backed persistent state: label sets, score cache, profiles, history, corpus."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import numpy as np
from numpy.typing import NDArray

from bertnews.constants import VECTOR_DTYPE
from bertnews.errors import StorageFailure
from bertnews.logging_config import get_logger
from bertnews.models import ArticleKey, ArticleRecord, Feedback, ProfileVector, ScoreMap

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS label_sets (
  label_set_hash TEXT PRIMARY KEY,
  labels_json TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS label_cache (
  label_set_hash TEXT NOT NULL,
  article_key TEXT NOT NULL,
  scores_json TEXT NOT NULL,
  PRIMARY KEY (label_set_hash, article_key)
);
CREATE TABLE IF NOT EXISTS profiles (
  user_id TEXT NOT NULL,
  label_set_hash TEXT NOT NULL,
  vector_json TEXT NOT NULL,
  PRIMARY KEY (user_id, label_set_hash)
);
CREATE TABLE IF NOT EXISTS read_history (
  user_id TEXT NOT NULL,
  label_set_hash TEXT NOT NULL,
  article_index INTEGER NOT NULL,
  feedback TEXT NOT NULL,
  ts INTEGER NOT NULL,
  PRIMARY KEY (user_id, label_set_hash, article_index)
);
CREATE TABLE IF NOT EXISTS read_history_id (
  user_id TEXT NOT NULL,
  label_set_hash TEXT NOT NULL,
  article_id TEXT NOT NULL,
  feedback TEXT NOT NULL,
  ts INTEGER NOT NULL,
  PRIMARY KEY (user_id, label_set_hash, article_id)
);
CREATE TABLE IF NOT EXISTS article_embeddings (
  id TEXT PRIMARY KEY,
  title TEXT,
  description TEXT,
  link TEXT,
  dim INTEGER NOT NULL,
  vector BLOB NOT NULL,
  updated_at INTEGER NOT NULL
);
"""


def encode_vector(vec: Sequence[float] | NDArray[np.floating[Any]]) -> bytes:
    return np.asarray(vec, dtype=VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes, dim: int) -> NDArray[np.float32]:
    if len(blob) != dim * 4:
        raise ValueError(f"vector blob has {len(blob)} bytes, expected {dim * 4}")
    return np.frombuffer(blob, dtype=VECTOR_DTYPE).astype(np.float32)


def encode_article_key(key: ArticleKey) -> str:
    # Tag the type so batch index 5 and article id "5" stay distinct.
    if isinstance(key, bool):
        raise TypeError("article key must be int or str")
    if isinstance(key, int):
        return f"i:{key}"
    return f"s:{key}"


class Store:
    """
    Source of truth for everything the service persists.

    A single connection is shared across threads and serialized by a lock;
    every sqlite error surfaces as StorageFailure.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"cannot open database {self.db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def _cursor(self, write: bool = False) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                yield cur
                if write:
                    self._conn.commit()
            except sqlite3.Error as e:
                if write:
                    self._conn.rollback()
                raise StorageFailure(str(e)) from e

    # -- label sets -------------------------------------------------------

    def insert_label_set(self, label_set_hash: str, labels: Sequence[str]) -> bool:
        """Insert if missing. Returns True when a new row was written."""
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT OR IGNORE INTO label_sets (label_set_hash, labels_json) VALUES (?, ?)",
                (label_set_hash, json.dumps(list(labels))),
            )
            return cur.rowcount > 0

    def get_label_set(self, label_set_hash: str) -> list[str] | None:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT labels_json FROM label_sets WHERE label_set_hash = ?",
                (label_set_hash,),
            ).fetchone()
        return json.loads(row["labels_json"]) if row else None

    # -- score cache ------------------------------------------------------

    def get_scores(self, label_set_hash: str, key: ArticleKey) -> ScoreMap | None:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT scores_json FROM label_cache WHERE label_set_hash = ? AND article_key = ?",
                (label_set_hash, encode_article_key(key)),
            ).fetchone()
        return json.loads(row["scores_json"]) if row else None

    def put_scores(self, label_set_hash: str, key: ArticleKey, scores: ScoreMap) -> None:
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT OR REPLACE INTO label_cache (label_set_hash, article_key, scores_json) "
                "VALUES (?, ?, ?)",
                (label_set_hash, encode_article_key(key), json.dumps(scores)),
            )

    # -- profiles ---------------------------------------------------------

    def get_profile(self, user_id: str, label_set_hash: str) -> ProfileVector | None:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT vector_json FROM profiles WHERE user_id = ? AND label_set_hash = ?",
                (user_id, label_set_hash),
            ).fetchone()
        return json.loads(row["vector_json"]) if row else None

    def put_profile(self, user_id: str, label_set_hash: str, vector: ProfileVector) -> None:
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT OR REPLACE INTO profiles (user_id, label_set_hash, vector_json) VALUES (?, ?, ?)",
                (user_id, label_set_hash, json.dumps(vector)),
            )

    # -- read history -----------------------------------------------------

    def record_read_id(
        self, user_id: str, label_set_hash: str, article_id: str, feedback: Feedback, ts: int
    ) -> None:
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT OR REPLACE INTO read_history_id "
                "(user_id, label_set_hash, article_id, feedback, ts) VALUES (?, ?, ?, ?, ?)",
                (user_id, label_set_hash, article_id, feedback, ts),
            )

    def record_read_index(
        self, user_id: str, label_set_hash: str, index: int, feedback: Feedback, ts: int
    ) -> None:
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT OR REPLACE INTO read_history "
                "(user_id, label_set_hash, article_index, feedback, ts) VALUES (?, ?, ?, ?, ?)",
                (user_id, label_set_hash, index, feedback, ts),
            )

    def read_indices(self, user_id: str) -> set[int]:
        with self._cursor() as cur:
            rows = cur.execute(
                "SELECT article_index FROM read_history WHERE user_id = ?", (user_id,)
            ).fetchall()
        return {int(r["article_index"]) for r in rows}

    def read_article_ids(self, user_id: str) -> set[str]:
        with self._cursor() as cur:
            rows = cur.execute(
                "SELECT article_id FROM read_history_id WHERE user_id = ?", (user_id,)
            ).fetchall()
        return {r["article_id"] for r in rows}

    def read_history(self, user_id: str) -> list[dict[str, Any]]:
        """Id-keyed history joined with article metadata, newest first."""
        with self._cursor() as cur:
            rows = cur.execute(
                "SELECT h.article_id, h.feedback, h.ts, a.title, a.description, a.link "
                "FROM read_history_id h JOIN article_embeddings a ON a.id = h.article_id "
                "WHERE h.user_id = ? ORDER BY h.ts DESC",
                (user_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    # -- article corpus ---------------------------------------------------

    def upsert_article(
        self,
        article_id: str,
        title: str,
        description: str,
        link: str,
        vector: Sequence[float] | NDArray[np.floating[Any]],
        updated_at: int,
    ) -> None:
        vec = np.asarray(vector, dtype=np.float32)
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT OR REPLACE INTO article_embeddings "
                "(id, title, description, link, dim, vector, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (article_id, title, description, link, int(vec.shape[0]), encode_vector(vec), updated_at),
            )

    def has_article(self, article_id: str) -> bool:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT 1 FROM article_embeddings WHERE id = ?", (article_id,)
            ).fetchone()
        return row is not None

    def get_article(self, article_id: str) -> ArticleRecord | None:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT id, title, description, link, dim, vector, updated_at "
                "FROM article_embeddings WHERE id = ?",
                (article_id,),
            ).fetchone()
        if row is None:
            return None
        try:
            return _row_to_article(row)
        except ValueError as e:
            raise StorageFailure(f"corrupt embedding for article {article_id}: {e}") from e

    def iter_articles(self) -> Iterator[ArticleRecord]:
        """Full corpus scan; rows with corrupt vectors are skipped."""
        with self._cursor() as cur:
            rows = cur.execute(
                "SELECT id, title, description, link, dim, vector, updated_at FROM article_embeddings"
            ).fetchall()
        for row in rows:
            try:
                yield _row_to_article(row)
            except ValueError as e:
                logger.warning("corrupt_article_embedding", article_id=row["id"], error=str(e))


def _row_to_article(row: sqlite3.Row) -> ArticleRecord:
    return ArticleRecord(
        id=row["id"],
        title=row["title"] or "",
        description=row["description"] or "",
        link=row["link"] or "",
        vector=decode_vector(row["vector"], int(row["dim"])),
        updated_at=int(row["updated_at"]),
    )
