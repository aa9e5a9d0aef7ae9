"""
Constants and configuration defaults for news personalization.
"""

# Gated Learning (online profile update)
GATED_ALPHA = 0.1  # Step size for labels implicated by the article
GATED_TAU = 0.1  # Signal threshold; below it a label decays instead
GATED_DECAY = 0.01  # Per-event multiplicative decay for weak labels
GATED_GAMMA = 2.0  # Sharpens high-confidence scores
GATED_TOPK = 0  # 0 = no top-K pruning during sparsification

# Profile Bounds
PROFILE_WEIGHT_MIN = -1.0
PROFILE_WEIGHT_MAX = 1.0

# Ranking
DEFAULT_TOPK = 10
EXPLORATION_PROBABILITY = 0.05
SIMILARITY_MODES = ("dot", "cosine")
COLD_START_EMBEDDING_WEIGHT = 1.0

# Classification
DEFAULT_MIN_SCORE = 0.05
FEEDBACK_MIN_SCORE = 0.0  # Feedback keeps every label, sparsify gates later
HYPOTHESIS_TEMPLATE = "This example is {}."
ARTICLE_TEXT_SEPARATOR = " — "

# Label Sets
LABEL_HASH_LENGTH = 16  # Hex chars of SHA-256 kept as fingerprint
LABEL_JOIN_SEPARATOR = "|"

# Caches (in-process, LRU bounded)
SCORE_CACHE_MAX_ENTRIES = 50000
LABEL_EMBEDDING_CACHE_MAX_SETS = 256
LABEL_SET_CACHE_MAX_ENTRIES = 1024

# Storage
DB_PATH = "data/app.db"
VECTOR_DTYPE = "<f4"  # Little-endian float32 blobs

# Serving
PORT = 3000
LOG_LEVEL = "INFO"

# Inference
EMBEDDING_MODEL_ID = "sentence-transformers/all-MiniLM-L6-v2"
EMBEDDING_MODEL_DIR = "models/embedder"
CLASSIFIER_MODEL_ID = "facebook/bart-large-mnli"
CLASSIFIER_MODEL_DIR = "models/zero_shot"
DEFAULT_EMBEDDING_BATCH_SIZE = 8
EMBEDDING_MIN_CLIP = 1e-9
TEXT_CONTENT_MAX_TOKENS = 512

# CLI
SCORE_BATCH_API_URL = "http://localhost:3000/topics/score_batch"
SCORE_BATCH_DEFAULT_LABELS = (
    "Economy",
    "Politics",
    "Climate",
    "Tech",
    "Sport",
    "Health",
    "War",
    "Energy",
    "Education",
    "Crime",
)
PRECOMPUTE_PROGRESS_EVERY = 200
