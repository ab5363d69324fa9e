# veda_rag/embedding.py — query/document embeddings (sentence-transformers, Matryoshka-truncated)

import asyncio
from typing import Optional, Protocol, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from .config import EMBED_DIM, EMBED_MODEL, log_debug

QUERY_PREFIX = "task: search result | query: "
DOCUMENT_PREFIX = "title: none | text: "


class Embedder(Protocol):
    dimension: int

    async def embed(self, text: str) -> np.ndarray: ...


def cosine_similarity(a, b) -> float:
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError(f"embedding shapes differ: {a.shape} vs {b.shape}")
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    return 0.0 if denom == 0 else float(a @ b) / denom


def _truncate_normalize(vecs: np.ndarray, dim: int) -> np.ndarray:
    vecs = np.asarray(vecs, dtype=np.float32)[:, :dim]
    norms = np.linalg.norm(vecs, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return vecs / norms


class SentenceTransformerEmbedder:
    def __init__(self, model_name: str = EMBED_MODEL, dimension: int = EMBED_DIM):
        self.model_name = model_name
        self.dimension = dimension
        self._model: Optional[SentenceTransformer] = None

    @property
    def model(self) -> SentenceTransformer:
        if self._model is None:
            log_debug(f"🔧 Loading embedding model: {self.model_name} (dim {self.dimension})")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def encode_queries(self, texts: Sequence[str]) -> np.ndarray:
        vecs = self.model.encode([QUERY_PREFIX + t for t in texts], convert_to_numpy=True)
        return _truncate_normalize(vecs, self.dimension)

    def encode_documents(self, texts: Sequence[str], show_progress_bar: bool = False) -> np.ndarray:
        vecs = self.model.encode([DOCUMENT_PREFIX + t for t in texts], convert_to_numpy=True,
                                 show_progress_bar=show_progress_bar)
        return _truncate_normalize(vecs, self.dimension)

    async def embed(self, text: str) -> np.ndarray:
        # encode() is CPU-bound; keep the event loop free
        vecs = await asyncio.to_thread(self.encode_queries, [text])
        return vecs[0]
