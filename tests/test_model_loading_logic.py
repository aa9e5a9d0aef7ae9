import numpy as np
import pytest
from unittest.mock import MagicMock, patch

from bertnews import inference
from bertnews.inference import ONNXEmbeddingModel, ONNXZeroShotClassifier, _softmax


@pytest.fixture
def model_dir(tmp_path):
    (tmp_path / "model.onnx").write_bytes(b"")
    return str(tmp_path)


def test_missing_model_file(tmp_path):
    with pytest.raises(FileNotFoundError, match="setup_model.py"):
        inference._open_session(str(tmp_path))


def test_encode_logic(model_dir):
    # Mock Tokenizer and Session
    with patch("bertnews.inference.AutoTokenizer") as MockTokenizer, \
         patch("bertnews.inference.ort.InferenceSession") as MockSession:

        tokenizer = MockTokenizer.from_pretrained.return_value
        tokenizer.return_value = {
            "input_ids": np.array([[1, 2, 3]]),
            "attention_mask": np.array([[1, 1, 0]]),  # 3rd token masked
        }

        session = MockSession.return_value
        session.get_inputs.return_value = [MagicMock(name="input_ids"), MagicMock(name="attention_mask")]
        # batch=1, seq=3, dim=4
        last_hidden_state = np.array([
            [
                [1.0, 1.0, 1.0, 1.0],
                [2.0, 2.0, 2.0, 2.0],
                [9.0, 9.0, 9.0, 9.0],  # masked out
            ]
        ])
        session.run.return_value = [last_hidden_state]

        model = ONNXEmbeddingModel(model_dir)
        embeddings = model.encode(["test sentence"], normalize_embeddings=False)

        # Mean of the two unmasked tokens
        expected = np.array([[1.5, 1.5, 1.5, 1.5]])
        assert np.allclose(embeddings, expected)

        embeddings_norm = model.encode(["test sentence"], normalize_embeddings=True)
        assert np.allclose(embeddings_norm, expected / np.linalg.norm(expected))
        assert embeddings_norm.dtype == np.float32


def test_encode_empty(model_dir):
    with patch("bertnews.inference.AutoTokenizer"), \
         patch("bertnews.inference.ort.InferenceSession"):
        model = ONNXEmbeddingModel(model_dir)
        assert len(model.encode([])) == 0


def test_softmax_rows_sum_to_one():
    probs = _softmax(np.array([[1.0, 2.0, 3.0], [0.0, 0.0, 0.0]], dtype=np.float32), axis=1)
    assert np.allclose(probs.sum(axis=1), 1.0)
    assert np.allclose(probs[1], 1 / 3)


def _classifier(model_dir, logits):
    with patch("bertnews.inference.AutoTokenizer") as MockTokenizer, \
         patch("bertnews.inference.AutoConfig") as MockConfig, \
         patch("bertnews.inference.ort.InferenceSession") as MockSession:
        MockConfig.from_pretrained.return_value.label2id = {
            "CONTRADICTION": 0,
            "NEUTRAL": 1,
            "ENTAILMENT": 2,
        }
        MockTokenizer.from_pretrained.return_value.return_value = {
            "input_ids": np.zeros((len(logits), 4)),
            "attention_mask": np.ones((len(logits), 4)),
        }
        MockSession.return_value.get_inputs.return_value = []
        MockSession.return_value.run.return_value = [np.array(logits, dtype=np.float32)]
        clf = ONNXZeroShotClassifier(model_dir)
    return clf


def test_classify_multi_label(model_dir):
    # rows: (contradiction, neutral, entailment) per label
    clf = _classifier(model_dir, [[0.0, 5.0, 0.0], [-2.0, 0.0, 2.0]])
    assert (clf.entailment_id, clf.contradiction_id) == (2, 0)

    scores = clf.classify("Cup final tonight", ["Sport", "Tech"], multi_label=True)

    # neutral logit is ignored: entailment vs contradiction only
    assert scores["Sport"] == pytest.approx(0.5)
    assert scores["Tech"] == pytest.approx(1 / (1 + np.exp(-4.0)), rel=1e-5)
    pairs = clf.tokenizer.call_args.args
    assert pairs[0] == ["Cup final tonight"] * 2
    assert pairs[1] == ["This example is Sport.", "This example is Tech."]


def test_classify_single_label_is_distribution(model_dir):
    clf = _classifier(model_dir, [[0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [0.0, 0.0, 3.0]])
    scores = clf.classify("text", ["a", "b", "c"], multi_label=False)
    assert sum(scores.values()) == pytest.approx(1.0)
    assert scores["a"] == pytest.approx(scores["b"])
    assert scores["c"] > scores["a"]


def test_classify_no_labels(model_dir):
    clf = _classifier(model_dir, [])
    assert clf.classify("text", []) == {}


def test_nli_ids_fallback(model_dir):
    with patch("bertnews.inference.AutoConfig") as MockConfig:
        MockConfig.from_pretrained.return_value.label2id = {"LABEL_0": 0, "LABEL_1": 1}
        assert inference._nli_label_ids(model_dir) == (2, 0)


def test_setup_model_exports_missing_models(tmp_path):
    import setup_model

    (tmp_path / "done").mkdir()
    (tmp_path / "done" / "model.onnx").write_bytes(b"")
    with patch("setup_model.subprocess.check_call") as check_call:
        setup_model.export("org/done", "feature-extraction", tmp_path / "done")
        check_call.assert_not_called()

        setup_model.export("org/new", "text-classification", tmp_path / "new")
        cmd = check_call.call_args.args[0]
        assert cmd[:3] == ["optimum-cli", "export", "onnx"]
        assert "text-classification" in cmd
        assert cmd[-1] == str(tmp_path / "new")


def test_init_singletons_use_model_classes(mock_onnx_models):
    embedder, classifier = mock_onnx_models
    assert inference.init_embedder("models/embedder") is embedder
    assert inference.init_embedder() is embedder
    assert inference.init_classifier() is classifier
