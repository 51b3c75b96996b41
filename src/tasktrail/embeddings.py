"""
tasktrail embeddings -- text to 384-dim L2-normalised vectors.

Backends, chosen by TASKTRAIL_EMBEDDINGS:
- onnx: bge-small-en-v1.5 through ONNX Runtime + tokenizers (~90MB RAM)
- sentence-transformers: same model through PyTorch
- auto: onnx, then sentence-transformers
- hash: deterministic feature hashing of word tokens, no model needed
- none: semantic search disabled

Unlike lexical search there is no silent fallback: when no model can be
loaded generate_embedding() raises EmbeddingUnavailableError and callers
(search, sync) degrade or retry. Hash vectors must be asked for explicitly,
because mixing them into a model-built index would make every similarity
meaningless.
"""

import hashlib
import logging
import re
import time as _time_module
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from tasktrail import config
from tasktrail.errors import EmbeddingUnavailableError

__all__ = [
    "EMBEDDING_DIM",
    "Embedder",
    "HashEmbedder",
    "generate_embedding",
    "generate_embeddings_batch",
    "hash_embedding",
    "get_embedding_info",
    "get_active_backend",
    "has_onnx_runtime",
    "has_sentence_transformers",
    "preload_embedding_model",
    "reset_embedding_state",
]

logger = logging.getLogger("tasktrail.embeddings")

EMBEDDING_DIM = 384
HASH_MODEL_NAME = "feature-hash-v1"

_EMBEDDING_MODEL = None
_EMBEDDING_BACKEND: Optional[str] = None  # "onnx" or "sentence-transformers"
_EMBEDDING_MODEL_NAME = "bge-small-en-v1.5"
_EMBEDDING_CACHE: OrderedDict = OrderedDict()
_EMBEDDING_CACHE_MAX = 512

# Circuit breaker: 3 failed loads, then wait out the cooldown before trying again.
_LOAD_ATTEMPTS = 0
_MAX_LOAD_ATTEMPTS = 3
_FIRST_FAILURE_TIME: float = 0.0
_CIRCUIT_BREAKER_COOLDOWN_S = 300

_ONNX_MODEL_SUBDIR = "models/bge-small-en-v1.5-onnx"
_ST_MODEL_ID = "BAAI/bge-small-en-v1.5"

_ONNX_CHECKED = False
_ONNX_AVAILABLE = False
_SENTENCE_TRANSFORMERS_CHECKED = False
_SENTENCE_TRANSFORMERS_AVAILABLE = False

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def reset_embedding_state() -> None:
    """Forget the loaded model, the cache and the circuit breaker.

    Tests call this between cases so an environment override in one test
    does not leak into the next.
    """
    global _EMBEDDING_MODEL, _EMBEDDING_BACKEND, _EMBEDDING_MODEL_NAME
    global _LOAD_ATTEMPTS, _FIRST_FAILURE_TIME
    _EMBEDDING_MODEL = None
    _EMBEDDING_BACKEND = None
    _EMBEDDING_MODEL_NAME = "bge-small-en-v1.5"
    _LOAD_ATTEMPTS = 0
    _FIRST_FAILURE_TIME = 0.0
    _EMBEDDING_CACHE.clear()


def _check_onnx_runtime() -> bool:
    global _ONNX_CHECKED, _ONNX_AVAILABLE
    if not _ONNX_CHECKED:
        import importlib.util

        _ONNX_AVAILABLE = importlib.util.find_spec("onnxruntime") is not None
        _ONNX_CHECKED = True
    return _ONNX_AVAILABLE


def _check_sentence_transformers() -> bool:
    global _SENTENCE_TRANSFORMERS_CHECKED, _SENTENCE_TRANSFORMERS_AVAILABLE
    if not _SENTENCE_TRANSFORMERS_CHECKED:
        import importlib.util

        _SENTENCE_TRANSFORMERS_AVAILABLE = importlib.util.find_spec("sentence_transformers") is not None
        _SENTENCE_TRANSFORMERS_CHECKED = True
    return _SENTENCE_TRANSFORMERS_AVAILABLE


def has_onnx_runtime() -> bool:
    return _check_onnx_runtime()


def has_sentence_transformers() -> bool:
    return _check_sentence_transformers()


def get_active_backend() -> Optional[str]:
    """Backend of the loaded model, 'hash' when hashing was requested, else None."""
    if config.embedding_backend() == "hash":
        return "hash"
    return _EMBEDDING_BACKEND


def _onnx_model_dir() -> Optional[Path]:
    """Directory holding model.onnx + tokenizer.json. The env override wins."""
    override = config.onnx_model_dir_override()
    candidates = [Path(override)] if override else []
    candidates.append(config.tasktrail_home() / _ONNX_MODEL_SUBDIR)
    for candidate in candidates:
        if (candidate / "model.onnx").exists() and (candidate / "tokenizer.json").exists():
            return candidate
    return None


def _load_onnx():
    import contextlib
    import io

    import onnxruntime as ort
    from tokenizers import Tokenizer

    model_dir = _onnx_model_dir()
    if model_dir is None:
        raise FileNotFoundError(
            f"ONNX model not found (looked in TASKTRAIL_ONNX_MODEL_DIR and {config.tasktrail_home() / _ONNX_MODEL_SUBDIR})"
        )
    tokenizer = Tokenizer.from_file(str(model_dir / "tokenizer.json"))
    tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
    tokenizer.enable_truncation(max_length=512)
    sess_opts = ort.SessionOptions()
    sess_opts.log_severity_level = 4
    sess_opts.enable_cpu_mem_arena = False
    with contextlib.redirect_stderr(io.StringIO()):
        session = ort.InferenceSession(
            str(model_dir / "model.onnx"),
            sess_options=sess_opts,
            providers=["CPUExecutionProvider"],
        )
    return tokenizer, session


def _load_sentence_transformers():
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(_ST_MODEL_ID, cache_folder=str(config.tasktrail_home() / "models"))


def _get_embedding_model(backend: str):
    """Lazy-load the model for backend ('auto', 'onnx' or 'sentence-transformers').

    Returns None when nothing could be loaded; the circuit breaker stops
    retrying after three failures until the cooldown expires.
    """
    global _EMBEDDING_MODEL, _EMBEDDING_BACKEND, _LOAD_ATTEMPTS, _FIRST_FAILURE_TIME
    if _EMBEDDING_MODEL is not None:
        return _EMBEDDING_MODEL

    if _LOAD_ATTEMPTS >= _MAX_LOAD_ATTEMPTS:
        if _FIRST_FAILURE_TIME > 0 and (_time_module.monotonic() - _FIRST_FAILURE_TIME) >= _CIRCUIT_BREAKER_COOLDOWN_S:
            _LOAD_ATTEMPTS = 0
            _FIRST_FAILURE_TIME = 0.0
            logger.info("Circuit breaker cooldown expired, retrying model load")
        else:
            return None
    _LOAD_ATTEMPTS += 1
    if _LOAD_ATTEMPTS == 1:
        _FIRST_FAILURE_TIME = _time_module.monotonic()

    import os

    os.environ.setdefault("TQDM_DISABLE", "1")

    if backend in ("auto", "onnx") and _check_onnx_runtime():
        try:
            _EMBEDDING_MODEL = _load_onnx()
            _EMBEDDING_BACKEND = "onnx"
        except Exception as e:
            logger.warning("Failed to load ONNX model (attempt %d): %s", _LOAD_ATTEMPTS, e)

    if _EMBEDDING_MODEL is None and backend in ("auto", "sentence-transformers") and _check_sentence_transformers():
        try:
            _EMBEDDING_MODEL = _load_sentence_transformers()
            _EMBEDDING_BACKEND = "sentence-transformers"
        except Exception as e:
            logger.warning("Failed to load sentence-transformers: %s", e)

    if _EMBEDDING_MODEL is None:
        logger.warning(
            "No embedding model loaded after attempt %d/%d (backend=%s, onnx=%s, onnx dir=%s, st=%s)",
            _LOAD_ATTEMPTS, _MAX_LOAD_ATTEMPTS, backend, _check_onnx_runtime(), _onnx_model_dir(),
            _check_sentence_transformers(),
        )
        return None

    _LOAD_ATTEMPTS = 0
    _FIRST_FAILURE_TIME = 0.0
    logger.info("Loaded %s embedding model (%s)", _EMBEDDING_BACKEND, _EMBEDDING_MODEL_NAME)
    return _EMBEDDING_MODEL


def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
    """Encode texts using ONNX Runtime. Returns normalized embeddings."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        # bge uses the CLS token as the sentence embedding
        embeddings = embeddings[:, 0, :]
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


def hash_embedding(text: str, dimension: int = EMBEDDING_DIM) -> List[float]:
    """Deterministic feature-hashing embedding.

    Each lower-cased word token (and each adjacent token pair) lands in a
    signed bucket, so texts sharing words get a positive cosine similarity.
    """
    vec = np.zeros(dimension, dtype=np.float32)
    tokens = [t.lower() for t in _TOKEN_RE.findall(text or "")]
    features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
    for feature in features:
        digest = hashlib.md5(feature.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        vec[bucket] += sign * (1.0 if " " not in feature else 0.5)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return [1.0 / float(np.sqrt(dimension))] * dimension
    return (vec / norm).tolist()


def generate_embedding(text: str) -> List[float]:
    """Embed text with the configured backend. Raises EmbeddingUnavailableError."""
    backend = config.embedding_backend()
    if backend == "none":
        raise EmbeddingUnavailableError("Embeddings are disabled (TASKTRAIL_EMBEDDINGS=none)")
    if backend == "hash":
        return hash_embedding(text)

    cache_key = hashlib.md5(text.encode("utf-8")).hexdigest()
    if cache_key in _EMBEDDING_CACHE:
        _EMBEDDING_CACHE.move_to_end(cache_key)
        return _EMBEDDING_CACHE[cache_key]

    model = _get_embedding_model(backend)
    if model is None:
        raise EmbeddingUnavailableError(f"No embedding model available for backend {backend!r}")
    try:
        if _EMBEDDING_BACKEND == "onnx":
            tokenizer, session = model
            result = _onnx_encode(tokenizer, session, [text])[0].tolist()
        else:
            result = model.encode(text, normalize_embeddings=True).tolist()
    except Exception as e:
        raise EmbeddingUnavailableError(f"Embedding generation failed: {e}") from e

    _EMBEDDING_CACHE[cache_key] = result
    while len(_EMBEDDING_CACHE) > _EMBEDDING_CACHE_MAX:
        _EMBEDDING_CACHE.popitem(last=False)
    return result


def generate_embeddings_batch(texts: List[str], batch_size: int = 32) -> List[List[float]]:
    """Embed several texts in one model call per batch_size chunk."""
    if not texts:
        return []
    backend = config.embedding_backend()
    if backend in ("none", "hash"):
        return [generate_embedding(t) for t in texts]

    model = _get_embedding_model(backend)
    if model is None:
        raise EmbeddingUnavailableError(f"No embedding model available for backend {backend!r}")
    try:
        if _EMBEDDING_BACKEND == "onnx":
            tokenizer, session = model
            results: List[List[float]] = []
            for i in range(0, len(texts), batch_size):
                results.extend(_onnx_encode(tokenizer, session, texts[i : i + batch_size]).tolist())
            return results
        return [e.tolist() for e in model.encode(texts, normalize_embeddings=True, batch_size=batch_size)]
    except Exception as e:
        raise EmbeddingUnavailableError(f"Batch embedding failed: {e}") from e


def preload_embedding_model() -> bool:
    """Warm the model up (CLI `sync` does this before draining the queue)."""
    try:
        generate_embedding("warmup")
    except EmbeddingUnavailableError as e:
        logger.info("Embedding model not preloaded: %s", e)
        return False
    return True


def model_name() -> str:
    if config.embedding_backend() == "hash":
        return HASH_MODEL_NAME
    return _EMBEDDING_MODEL_NAME


def get_embedding_info() -> Dict[str, Any]:
    has_onnx = _check_onnx_runtime()
    onnx_dir = _onnx_model_dir() if has_onnx else None
    return {
        "requested_backend": config.embedding_backend(),
        "backend": get_active_backend(),
        "model": model_name(),
        "model_loaded": _EMBEDDING_MODEL is not None,
        "onnx_available": has_onnx,
        "onnx_model_dir": str(onnx_dir) if onnx_dir else None,
        "sentence_transformers_available": _check_sentence_transformers(),
        "dimension": EMBEDDING_DIM,
        "cache_size": len(_EMBEDDING_CACHE),
    }


class Embedder:
    """Embedding provider used by search and sync. Wraps the module-level backend."""

    dimension = EMBEDDING_DIM

    @property
    def model_name(self) -> str:
        return model_name()

    def embed(self, text: str) -> List[float]:
        return generate_embedding(text)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return generate_embeddings_batch(texts)


class HashEmbedder(Embedder):
    """Offline provider: feature-hashing vectors regardless of configuration."""

    @property
    def model_name(self) -> str:
        return HASH_MODEL_NAME

    def embed(self, text: str) -> List[float]:
        return hash_embedding(text, self.dimension)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [hash_embedding(t, self.dimension) for t in texts]
