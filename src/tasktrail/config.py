"""
tasktrail configuration -- environment-driven settings.

Every value is resolved lazily so tests can override it through the
environment without reloading modules.
"""

import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_DIR_NAME = ".tasktrail"
DB_FILE_NAME = "tasktrail.db"

EMBEDDING_BACKENDS = ("auto", "onnx", "sentence-transformers", "hash", "none")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger("tasktrail.config").warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def tasktrail_home() -> Path:
    """Root for caches shared across stores (embedding models)."""
    return Path(os.environ.get("TASKTRAIL_HOME", str(Path.home() / ".tasktrail")))


def store_dir(cwd: Optional[Path] = None) -> Path:
    base = Path(cwd) if cwd else Path.cwd()
    return base / os.environ.get("TASKTRAIL_DIR", DEFAULT_DIR_NAME)


def db_path(cwd: Optional[Path] = None) -> Path:
    """Database file for the store rooted at cwd. TASKTRAIL_DB wins when set."""
    explicit = os.environ.get("TASKTRAIL_DB")
    if explicit:
        return Path(explicit)
    return store_dir(cwd) / DB_FILE_NAME


def embeddings_skipped() -> bool:
    return os.environ.get("TASKTRAIL_SKIP_EMBEDDINGS") == "1"


def embedding_backend() -> str:
    """Requested embedding backend. Unknown values fall back to 'auto'."""
    if embeddings_skipped():
        return "none"
    val = os.environ.get("TASKTRAIL_EMBEDDINGS", "auto").strip().lower()
    if val not in EMBEDDING_BACKENDS:
        logging.getLogger("tasktrail.config").warning("Unknown TASKTRAIL_EMBEDDINGS=%r, using auto", val)
        return "auto"
    return val


def onnx_model_dir_override() -> Optional[str]:
    return os.environ.get("TASKTRAIL_ONNX_MODEL_DIR") or None


def search_timeout() -> float:
    return _env_float("TASKTRAIL_SEARCH_TIMEOUT", 2.0)


def similarity_threshold() -> float:
    return _env_float("TASKTRAIL_SIMILARITY_THRESHOLD", 0.5)


def sync_max_attempts() -> int:
    return max(1, _env_int("TASKTRAIL_SYNC_MAX_ATTEMPTS", 5))


def sync_flush_timeout() -> float:
    """Seconds a closing Tracker spends embedding its own writes."""
    return _env_float("TASKTRAIL_SYNC_FLUSH_TIMEOUT", 10.0)


def log_level() -> int:
    if os.environ.get("TASKTRAIL_DEBUG") == "1":
        return logging.DEBUG
    name = os.environ.get("TASKTRAIL_LOG_LEVEL", "WARNING").upper()
    return getattr(logging, name, logging.WARNING)


def setup_logging(level: Optional[int] = None) -> None:
    """Attach a stderr handler to the 'tasktrail' logger (idempotent)."""
    logger = logging.getLogger("tasktrail")
    logger.setLevel(level if level is not None else log_level())
    if not any(getattr(h, "_tasktrail", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._tasktrail = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
