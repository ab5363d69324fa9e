# veda_rag/config.py — env-driven settings (.env supported) + retrieval knobs

import os
from dataclasses import dataclass
from datetime import datetime

from dotenv import load_dotenv

from .errors import ConfigError

load_dotenv(dotenv_path=os.path.join(os.getcwd(), ".env"))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in ("0", "false", "no", "off", "")


def _resolve_lmstudio_api(url: str) -> str:
    url = url.rstrip("/")
    if url.endswith("/v1"):
        return url + "/chat/completions"
    return url


# ---------------- Config ----------------
INDEX_PATH      = os.getenv("VEDA_INDEX_PATH", os.path.join("data", "rigveda-512d.bin"))
EMBED_MODEL     = os.getenv("VEDA_EMBED_MODEL", "google/embeddinggemma-300m")
EMBED_DIM       = int(os.getenv("VEDA_EMBED_DIM", "512"))
LMSTUDIO_API    = _resolve_lmstudio_api(os.getenv("LMSTUDIO_URL", "http://127.0.0.1:1234/v1"))
MODEL_NAME      = os.getenv("MODEL_NAME", "meta-llama-3-8b-instruct")
LLM_TIMEOUT     = float(os.getenv("LLM_TIMEOUT", "60"))

DEBUG_MODE      = _env_bool("DEBUG_MODE", "1")
DEBUG_LOG_FILE  = os.getenv("DEBUG_LOG_FILE", "")
# ----------------------------------------


def log_debug(msg: str):
    if not DEBUG_MODE:
        return
    print(msg)
    if not DEBUG_LOG_FILE:
        return
    try:
        with open(DEBUG_LOG_FILE, "a", encoding="utf-8") as f:
            f.write(f"{datetime.now().isoformat()} {msg}\n")
    except OSError:
        pass


@dataclass(frozen=True)
class RetrievalConfig:
    """Knobs of one request's retrieval/refinement loop."""

    limit: int = 5
    min_score: float = 0.0
    vector_weight: float = 0.7
    text_weight: float = 0.3
    max_iterations: int = 5
    dedup_threshold: float = 0.85
    reference_limit: int = 50
    max_selected: int = 10
    phrase_attempts: int = 3

    def __post_init__(self):
        if self.limit < 1:
            raise ConfigError(f"limit must be >= 1, got {self.limit}")
        if self.reference_limit < 1:
            raise ConfigError(f"reference_limit must be >= 1, got {self.reference_limit}")
        if self.max_selected < 1:
            raise ConfigError(f"max_selected must be >= 1, got {self.max_selected}")
        if self.vector_weight < 0 or self.text_weight < 0:
            raise ConfigError("search weights must be non-negative")
        if not -1.0 <= self.min_score <= 1.0:
            raise ConfigError(f"min_score must lie in [-1, 1], got {self.min_score}")
        if not -1.0 <= self.dedup_threshold <= 1.0:
            raise ConfigError(f"dedup_threshold must lie in [-1, 1], got {self.dedup_threshold}")
        if self.max_iterations < 0:
            raise ConfigError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if self.phrase_attempts < 1:
            raise ConfigError(f"phrase_attempts must be >= 1, got {self.phrase_attempts}")

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        try:
            return cls(
                limit=int(os.getenv("RAG_LIMIT", "5")),
                min_score=float(os.getenv("RAG_MIN_SCORE", "0.0")),
                vector_weight=float(os.getenv("RAG_VECTOR_WEIGHT", "0.7")),
                text_weight=float(os.getenv("RAG_TEXT_WEIGHT", "0.3")),
                max_iterations=int(os.getenv("RAG_MAX_ITERATIONS", "5")),
                dedup_threshold=float(os.getenv("RAG_DEDUP_THRESHOLD", "0.85")),
                reference_limit=int(os.getenv("RAG_REFERENCE_LIMIT", "50")),
                max_selected=int(os.getenv("RAG_MAX_SELECTED", "10")),
                phrase_attempts=int(os.getenv("RAG_PHRASE_ATTEMPTS", "3")),
            )
        except ValueError as e:
            raise ConfigError(f"invalid retrieval setting: {e}") from e
