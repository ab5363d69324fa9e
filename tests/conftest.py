# FILE: tests/conftest.py
"""
Pytest configuration for the veda_rag test suite.

Configures:
- pytest-asyncio for async test support (asyncio_mode = auto in pyproject)
- in-process fakes for the external collaborators (LLM, embedder)
- a small RigVeda corpus and a built SearchEngine over it
"""
import hashlib
import json
import re
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import numpy as np
import pytest

from veda_rag.config import RetrievalConfig
from veda_rag.models import CorpusEntry
from veda_rag.search_engine import SearchEngine

DIM = 16

_ID_RE = re.compile(r'id="([^"]+)"')


# =============================================================================
# Fake collaborators
# =============================================================================

def hash_vector(text: str, dim: int = DIM) -> np.ndarray:
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
    v = np.random.default_rng(seed).standard_normal(dim).astype(np.float32)
    return v / np.linalg.norm(v)


class HashEmbedder:
    """Deterministic embedder: same text → same unit vector. `overrides` pins specific texts."""

    def __init__(self, dimension: int = DIM, overrides: Optional[Dict[str, np.ndarray]] = None):
        self.dimension = dimension
        self.overrides = dict(overrides or {})
        self.calls: List[str] = []

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if text in self.overrides:
            v = np.asarray(self.overrides[text], dtype=np.float32)
            return v / np.linalg.norm(v)
        return hash_vector(text, self.dimension)


def classify_all(importance: str = "high", filtered: bool = False, search_request: str = ""):
    """Classifier reply builder: every id in the prompt gets the same verdict."""
    def reply(prompt: str) -> str:
        ids = _ID_RE.findall(prompt)
        return json.dumps({
            "verseEvaluations": [
                {"id": i, "importance": importance, "isFiltered": filtered, "reasoning": "scripted"}
                for i in ids
            ],
            "needsMoreSearch": filtered,
            "searchRequest": search_request,
            "reasoning": "scripted",
        }, ensure_ascii=False)
    return reply


class ScriptedLLM:
    """
    Routes each prompt by its trailing cue to a scripted responder.

    phrases:   list consumed in order for phrase-generation prompts (then repeats the last)
    keywords:  reply to the direct-translation prompt
    classify:  callable(prompt) -> str, or an Exception instance to raise
    translate: callable(prompt) -> str, or an Exception instance to raise
    answer:    text streamed in word-sized fragments for synthesis
    """

    def __init__(self,
                 phrases: Optional[List[str]] = None,
                 keywords: str = "ऋत सत्य",
                 classify=None,
                 translate=None,
                 answer: str = "The verses speak of the beginning.",
                 stream_error: Optional[Exception] = None):
        self.phrases = list(phrases or ["अग्नि होत्र"])
        self.keywords = keywords
        self.classify = classify if classify is not None else classify_all()
        self.translate = translate if translate is not None else (lambda prompt: "English Translation: In the beginning.")
        self.answer = answer
        self.stream_error = stream_error
        self.calls: List[tuple] = []
        self._phrase_i = 0

    def kinds(self) -> List[str]:
        return [kind for kind, _, _ in self.calls]

    def count(self, kind: str) -> int:
        return self.kinds().count(kind)

    @staticmethod
    def _respond(responder, prompt: str) -> str:
        if isinstance(responder, Exception):
            raise responder
        return responder(prompt)

    async def generate(self, prompt: str, temperature: float = 0.3) -> str:
        if '"verseEvaluations"' in prompt:
            self.calls.append(("classify", prompt, temperature))
            return self._respond(self.classify, prompt)
        if prompt.rstrip().endswith("Sanskrit search phrase:"):
            self.calls.append(("phrase", prompt, temperature))
            phrase = self.phrases[min(self._phrase_i, len(self.phrases) - 1)]
            self._phrase_i += 1
            if isinstance(phrase, Exception):
                raise phrase
            return phrase
        if prompt.rstrip().endswith("Sanskrit keywords:"):
            self.calls.append(("keywords", prompt, temperature))
            return self.keywords
        if prompt.rstrip().endswith("English Translation:"):
            self.calls.append(("translate", prompt, temperature))
            return self._respond(self.translate, prompt)
        raise AssertionError(f"unexpected prompt: {prompt[:120]}")

    async def stream(self, prompt: str, temperature: float = 0.6):
        self.calls.append(("synthesis", prompt, temperature))
        for word in self.answer.split(" "):
            yield word + " "
        if self.stream_error is not None:
            raise self.stream_error


# =============================================================================
# Corpus fixtures
# =============================================================================

VERSES = [
    ("rv_1_1_1", "अग्निमीळे पुरोहितं यज्ञस्य देवमृत्विजम्", "Rigveda Mandala 1", "1.1.1"),
    ("rv_1_32_1", "इन्द्रस्य नु वीर्याणि प्र वोचं यानि चकार प्रथमानि वज्री", "Rigveda Mandala 1", "1.32.1"),
    ("rv_3_62_10", "तत्सवितुर्वरेण्यं भर्गो देवस्य धीमहि धियो यो नः प्रचोदयात्", "Rigveda Mandala 3", "3.62.10"),
    ("rv_9_1_1", "स्वादिष्ठया मदिष्ठया पवस्व सोम धारया", "Rigveda Mandala 9", "9.1.1"),
    ("rv_10_13_1", "युजे वां ब्रह्म पूर्व्यं नमोभिर्वि श्लोक एतु पथ्येव सूरेः", "Rigveda Mandala 10", "10.13.1"),
    ("rv_10_90_1", "सहस्रशीर्षा पुरुषः सहस्राक्षः सहस्रपात्", "Rigveda Mandala 10", "10.90.1"),
    ("rv_10_129_1", "नासदासीन्नो सदासीत्तदानीं नासीद्रजो नो व्योमा परो यत्", "Rigveda Mandala 10", "10.129.1"),
    ("rv_10_129_2", "न मृत्युरासीदमृतं न तर्हि न रात्र्या अह्न आसीत्प्रकेतः", "Rigveda Mandala 10", "10.129.2"),
]


def make_entry(entry_id: str, text: str, source: str, reference: str, dim: int = DIM) -> CorpusEntry:
    return CorpusEntry(id=entry_id, text=text, source_label=source, reference=reference,
                       embedding=hash_vector(text, dim))


@pytest.fixture
def corpus() -> List[CorpusEntry]:
    return [make_entry(*v) for v in VERSES]


@pytest.fixture
def engine(corpus) -> SearchEngine:
    e = SearchEngine()
    e.build(corpus)
    return e


@pytest.fixture
def embedder() -> HashEmbedder:
    return HashEmbedder()


@pytest.fixture
def config() -> RetrievalConfig:
    return RetrievalConfig()


@pytest.fixture
def events() -> List:
    return []


@pytest.fixture
def progress(events) -> Callable:
    return events.append
