from pathlib import Path
import subprocess
import sys

from bertnews.constants import (
    CLASSIFIER_MODEL_DIR,
    CLASSIFIER_MODEL_ID,
    EMBEDDING_MODEL_DIR,
    EMBEDDING_MODEL_ID,
)

# (model id, optimum task, output dir)
MODELS = [
    (EMBEDDING_MODEL_ID, "feature-extraction", EMBEDDING_MODEL_DIR),
    (CLASSIFIER_MODEL_ID, "text-classification", CLASSIFIER_MODEL_DIR),
]


def export(model_id: str, task: str, model_dir: Path):
    if (model_dir / "model.onnx").exists():
        print(f"{model_id} already exported to {model_dir}.")
        return

    print(f"Exporting {model_id} to ONNX...")
    subprocess.check_call([
        "optimum-cli", "export", "onnx",
        "--model", model_id,
        "--task", task,
        str(model_dir)
    ])


def setup():
    print("Setting up models (requires internet and ~2GB space)...")

    # We use optimum to export to ONNX.
    # Adding it temporarily if not present.
    try:
        import importlib.util
        if importlib.util.find_spec("optimum") is None:
            raise ImportError
    except ImportError:
        print("Installing optimum and onnxruntime...")
        subprocess.check_call([sys.executable, "-m", "pip", "install", "optimum[onnxruntime]"])

    for model_id, task, model_dir in MODELS:
        export(model_id, task, Path(model_dir))
    print("Setup complete.")


if __name__ == "__main__":
    setup()
