from __future__ import annotations

import json
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from bertnews.constants import (
    CLASSIFIER_MODEL_DIR,
    DB_PATH,
    EMBEDDING_MODEL_DIR,
    EXPLORATION_PROBABILITY,
    GATED_ALPHA,
    GATED_DECAY,
    GATED_GAMMA,
    GATED_TAU,
    GATED_TOPK,
    LABEL_EMBEDDING_CACHE_MAX_SETS,
    LOG_LEVEL,
    PORT,
    SCORE_CACHE_MAX_ENTRIES,
)

CONFIG_DIR = Path.home() / ".config" / "bertnews"
CONFIG_FILE = CONFIG_DIR / "config.json"


def load_config() -> dict:
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return json.load(f)
    except Exception:
        return {}


def save_config(key: str, value: Any):
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    config = load_config()
    config[key] = value
    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)


@dataclass(frozen=True)
class GatedParams:
    """Hyperparameters of the gated sparse profile update."""

    alpha: float = GATED_ALPHA
    tau: float = GATED_TAU
    decay: float = GATED_DECAY
    gamma: float = GATED_GAMMA
    topk: int = GATED_TOPK

    def with_alpha(self, alpha: float | None) -> GatedParams:
        if alpha is None:
            return self
        return replace(self, alpha=float(alpha))


@dataclass(frozen=True)
class Settings:
    db_path: str = DB_PATH
    port: int = PORT
    log_level: str = LOG_LEVEL
    gated: GatedParams = field(default_factory=GatedParams)
    exploration_probability: float = EXPLORATION_PROBABILITY
    score_cache_size: int = SCORE_CACHE_MAX_ENTRIES
    label_cache_size: int = LABEL_EMBEDDING_CACHE_MAX_SETS
    embedding_model_dir: str = EMBEDDING_MODEL_DIR
    classifier_model_dir: str = CLASSIFIER_MODEL_DIR


# (env var, config-file key, parser)
_OVERRIDES: list[tuple[str, str, Callable[[str], Any]]] = [
    ("DB_PATH", "db_path", str),
    ("PORT", "port", int),
    ("LOG_LEVEL", "log_level", str),
    ("GATED_ALPHA", "gated_alpha", float),
    ("GATED_TAU", "gated_tau", float),
    ("GATED_DECAY", "gated_decay", float),
    ("GATED_GAMMA", "gated_gamma", float),
    ("GATED_TOPK", "gated_topk", int),
    ("EXPLORATION_PROBABILITY", "exploration_probability", float),
    ("SCORE_CACHE_SIZE", "score_cache_size", int),
    ("LABEL_CACHE_SIZE", "label_cache_size", int),
    ("EMBEDDING_MODEL_DIR", "embedding_model_dir", str),
    ("CLASSIFIER_MODEL_DIR", "classifier_model_dir", str),
]


def _parse(name: str, raw: Any, parser: Callable[[str], Any]) -> Any:
    try:
        # GATED_TOPK=0.0 style values are common in process managers
        if parser is int and isinstance(raw, str) and "." in raw:
            return int(float(raw))
        return parser(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    Build Settings from defaults, then the JSON config file, then env vars.
    Later sources win.
    """
    if environ is None:
        environ = os.environ
    file_config = load_config()

    values: dict[str, Any] = {}
    for env_name, key, parser in _OVERRIDES:
        if key in file_config:
            values[key] = _parse(key, file_config[key], parser)
        raw = environ.get(env_name)
        if raw not in (None, ""):
            values[key] = _parse(env_name, raw, parser)

    defaults = GatedParams()
    gated = GatedParams(
        alpha=values.pop("gated_alpha", defaults.alpha),
        tau=values.pop("gated_tau", defaults.tau),
        decay=values.pop("gated_decay", defaults.decay),
        gamma=values.pop("gated_gamma", defaults.gamma),
        topk=values.pop("gated_topk", defaults.topk),
    )
    return Settings(gated=gated, **values)
