"""Local ONNX models: sentence embedder and NLI zero-shot classifier."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import cast

import numpy as np
import onnxruntime as ort
from numpy.typing import NDArray
from transformers import AutoConfig, AutoTokenizer, BatchEncoding, PreTrainedTokenizerBase

from bertnews.constants import (
    CLASSIFIER_MODEL_DIR,
    DEFAULT_EMBEDDING_BATCH_SIZE,
    EMBEDDING_MIN_CLIP,
    EMBEDDING_MODEL_DIR,
    HYPOTHESIS_TEMPLATE,
    TEXT_CONTENT_MAX_TOKENS,
)
from bertnews.logging_config import get_logger

logger = get_logger(__name__)

# Global singletons for the models
_embedder: ONNXEmbeddingModel | None = None
_classifier: ONNXZeroShotClassifier | None = None
_embedder_init_lock = threading.Lock()
_classifier_init_lock = threading.Lock()


def _open_session(model_dir: str) -> ort.InferenceSession:
    if not Path(f"{model_dir}/model.onnx").exists():
        raise FileNotFoundError(
            f"Model not found in {model_dir}. Please run setup_model.py."
        )
    return ort.InferenceSession(f"{model_dir}/model.onnx", providers=["CPUExecutionProvider"])


def _softmax(logits: NDArray[np.float32], axis: int = -1) -> NDArray[np.float32]:
    shifted = logits - np.max(logits, axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return (exp / np.sum(exp, axis=axis, keepdims=True)).astype(np.float32)


class ONNXEmbeddingModel:
    def __init__(self, model_dir: str = EMBEDDING_MODEL_DIR) -> None:
        self.model_dir: str = model_dir
        self.session: ort.InferenceSession = _open_session(model_dir)
        self.tokenizer: PreTrainedTokenizerBase = AutoTokenizer.from_pretrained(model_dir)
        self._lock = threading.Lock()

    def encode(
        self,
        texts: list[str],
        normalize_embeddings: bool = True,
        batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> NDArray[np.float32]:
        all_embeddings: list[NDArray[np.float32]] = []
        total_items: int = len(texts)

        for i in range(0, total_items, batch_size):
            if progress_callback:
                progress_callback(i, total_items)

            batch: list[str] = texts[i : i + batch_size]
            with self._lock:
                inputs: BatchEncoding = self.tokenizer(
                    batch,
                    padding=True,
                    truncation=True,
                    max_length=TEXT_CONTENT_MAX_TOKENS,
                    return_tensors="np",
                )
                attention_mask = cast(
                    NDArray[np.int64], inputs["attention_mask"].astype(np.int64, copy=True)
                )

                input_names: list[str] = [node.name for node in self.session.get_inputs()]
                ort_inputs: dict[str, NDArray[np.int64]] = {
                    k: v.astype(np.int64) for k, v in inputs.items() if k in input_names
                }

                outputs = self.session.run(None, ort_inputs)
                last_hidden_state: NDArray[np.float32] = cast(
                    NDArray[np.float32], outputs[0]
                )

            # Mean Pooling
            mask_expanded: NDArray[np.float64] = np.expand_dims(
                attention_mask, -1
            ).astype(float)
            sum_embeddings: NDArray[np.float32] = np.sum(
                last_hidden_state * mask_expanded, axis=1
            )
            sum_mask: NDArray[np.float64] = np.clip(
                mask_expanded.sum(axis=1), a_min=EMBEDDING_MIN_CLIP, a_max=None
            )
            batch_embeddings: NDArray[np.float32] = sum_embeddings / sum_mask

            if normalize_embeddings:
                norm: NDArray[np.float64] = np.linalg.norm(
                    batch_embeddings, axis=1, keepdims=True
                )
                batch_embeddings = batch_embeddings / np.clip(
                    norm, a_min=EMBEDDING_MIN_CLIP, a_max=None
                )

            all_embeddings.append(batch_embeddings.astype(np.float32))

        if progress_callback:
            progress_callback(total_items, total_items)

        return (
            np.vstack(all_embeddings)
            if all_embeddings
            else np.array([], dtype=np.float32)
        )


class ONNXZeroShotClassifier:
    """
    Zero-shot topic classification with an NLI model.

    Each label becomes the hypothesis "This example is {label}." against the
    article text as premise.
    """

    def __init__(
        self,
        model_dir: str = CLASSIFIER_MODEL_DIR,
        hypothesis_template: str = HYPOTHESIS_TEMPLATE,
    ) -> None:
        self.model_dir: str = model_dir
        self.session: ort.InferenceSession = _open_session(model_dir)
        self.tokenizer: PreTrainedTokenizerBase = AutoTokenizer.from_pretrained(model_dir)
        self.hypothesis_template = hypothesis_template
        self.entailment_id, self.contradiction_id = _nli_label_ids(model_dir)
        self._lock = threading.Lock()

    def classify(
        self, text: str, labels: Sequence[str], multi_label: bool = True
    ) -> dict[str, float]:
        if not labels:
            return {}
        hypotheses = [self.hypothesis_template.format(label) for label in labels]
        with self._lock:
            inputs: BatchEncoding = self.tokenizer(
                [text] * len(hypotheses),
                hypotheses,
                padding=True,
                truncation="only_first",
                max_length=TEXT_CONTENT_MAX_TOKENS,
                return_tensors="np",
            )
            input_names: list[str] = [node.name for node in self.session.get_inputs()]
            ort_inputs: dict[str, NDArray[np.int64]] = {
                k: v.astype(np.int64) for k, v in inputs.items() if k in input_names
            }
            outputs = self.session.run(None, ort_inputs)
        # (n_labels, n_nli_classes)
        logits = cast(NDArray[np.float32], outputs[0]).astype(np.float32)

        if multi_label:
            pair = logits[:, [self.contradiction_id, self.entailment_id]]
            probs = _softmax(pair, axis=1)[:, 1]
        else:
            probs = _softmax(logits[:, self.entailment_id], axis=0)
        return {label: float(p) for label, p in zip(labels, probs)}


def _nli_label_ids(model_dir: str) -> tuple[int, int]:
    config = AutoConfig.from_pretrained(model_dir)
    label2id = {str(k).lower(): int(v) for k, v in (config.label2id or {}).items()}
    entailment = next((v for k, v in label2id.items() if k.startswith("entail")), None)
    contradiction = next((v for k, v in label2id.items() if k.startswith("contra")), None)
    if entailment is None or contradiction is None:
        # MNLI heads order labels contradiction, neutral, entailment
        logger.warning("nli_label_ids_missing", model_dir=model_dir, label2id=label2id)
        return 2, 0
    return entailment, contradiction


def init_embedder(model_dir: str = EMBEDDING_MODEL_DIR) -> ONNXEmbeddingModel:
    global _embedder
    if _embedder is None:
        with _embedder_init_lock:
            if _embedder is None:
                _embedder = ONNXEmbeddingModel(model_dir)
    assert _embedder is not None
    return _embedder


def init_classifier(model_dir: str = CLASSIFIER_MODEL_DIR) -> ONNXZeroShotClassifier:
    global _classifier
    if _classifier is None:
        with _classifier_init_lock:
            if _classifier is None:
                _classifier = ONNXZeroShotClassifier(model_dir)
    assert _classifier is not None
    return _classifier
