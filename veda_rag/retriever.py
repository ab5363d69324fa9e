"""
retriever.py — process-owned services: index + collaborators

Usage (server):
    services = VedaServices()
    services.init()                      # once at startup, loads the binary index
    stream = services.pipeline().answer("What does the creation hymn say?")
    ...
    await services.aclose()              # at shutdown

Nothing here is a module global: the server owns one VedaServices on
app.state, tests build their own with fake collaborators.
"""

import threading
from typing import Dict, Optional

from .binary_index import load_index
from .config import INDEX_PATH, RetrievalConfig, log_debug
from .embedding import Embedder, SentenceTransformerEmbedder
from .errors import DimensionMismatchError, NotReadyError
from .llm import LMStudioClient, TextGenerator
from .pipeline import Pipeline
from .search_agent import ProgressSink
from .search_engine import SearchEngine


class VedaServices:
    def __init__(self,
                 index_path: str = INDEX_PATH,
                 config: Optional[RetrievalConfig] = None,
                 llm: Optional[TextGenerator] = None,
                 embedder: Optional[Embedder] = None):
        self.index_path = index_path
        self.config = config or RetrievalConfig.from_env()
        self.llm = llm
        self.embedder = embedder
        self._owns_llm = llm is None
        self.engine: Optional[SearchEngine] = None
        self.header: Dict = {}
        self._lock = threading.Lock()
        self._inited = False

    @property
    def inited(self) -> bool:
        return self._inited

    def init(self, index_path: Optional[str] = None, force: bool = False):
        """
        Load the index and build the search engine once.
        - Same path and already loaded → no-op (unless force)
        - FormatError from a corrupt file propagates: the process cannot serve
        """
        path = index_path or self.index_path
        with self._lock:
            if self._inited and path == self.index_path and not force:
                return

            header, entries = load_index(path)
            engine = SearchEngine()
            engine.build(entries)

            if self.embedder is None:
                self.embedder = SentenceTransformerEmbedder(dimension=engine.dimension)
            elif entries and self.embedder.dimension != engine.dimension:
                raise DimensionMismatchError(engine.dimension, self.embedder.dimension)
            if self.llm is None:
                self.llm = LMStudioClient()
                self._owns_llm = True

            self.engine = engine
            self.header = header
            self.index_path = path
            self._inited = True
            log_debug(f"📚 Services ready: {engine.get_document_count()} verses from {path}")

    def reload(self) -> Dict:
        self.init(force=True)
        return self.stats()

    def _ensure_init(self):
        if not self._inited:
            raise NotReadyError("services used before init()")

    def pipeline(self, progress: Optional[ProgressSink] = None) -> Pipeline:
        """A fresh controller per request; only the engine and collaborators are shared."""
        self._ensure_init()
        return Pipeline(self.engine, self.llm, self.embedder, self.config, progress)

    # ---------- status / stats ----------

    def get_doc_count(self) -> int:
        return self.engine.get_document_count() if self.engine else 0

    def get_mandala_distribution(self) -> Dict[str, int]:
        return self.engine.get_mandala_distribution() if self.engine else {}

    def stats(self) -> Dict:
        return {
            "ready": self._inited,
            "index_path": self.index_path,
            "documents": self.get_doc_count(),
            "dimension": self.engine.dimension if self.engine else None,
            "model": self.header.get("model"),
            "mandalas": self.get_mandala_distribution(),
        }

    async def aclose(self):
        if self._owns_llm and self.llm is not None:
            await self.llm.aclose()
            self.llm = None
        with self._lock:
            self.engine = None
            self._inited = False
        log_debug("👋 Services closed")
