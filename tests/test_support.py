# FILE: tests/test_support.py
"""
Tests for the supporting modules:
- RetrievalConfig validation and environment overrides
- glossary reference detection and fallback rotation
- LM Studio client over a mocked HTTP transport
- indexer corpus loading, embedding batches and the search CLI
"""

import json

import httpx
import numpy as np
import pytest

import rag_indexer
from conftest import DIM, hash_vector
from veda_rag.binary_index import load_index, save_index
from veda_rag.config import RetrievalConfig
from veda_rag.errors import ConfigError, LLMError
from veda_rag.glossary import find_references, next_fallback_term, sanitize_unicode
from veda_rag.llm import LMStudioClient, _drop_think, strip_think


# =============================================================================
# Config
# =============================================================================

class TestRetrievalConfig:
    def test_defaults(self):
        cfg = RetrievalConfig()
        assert (cfg.limit, cfg.max_iterations, cfg.max_selected) == (5, 5, 10)
        assert cfg.dedup_threshold == 0.85

    @pytest.mark.parametrize("kwargs", [
        {"limit": 0},
        {"min_score": 1.5},
        {"vector_weight": -0.1},
        {"max_iterations": -1},
        {"dedup_threshold": 2.0},
        {"phrase_attempts": 0},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ConfigError):
            RetrievalConfig(**kwargs)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RAG_LIMIT", "7")
        monkeypatch.setenv("RAG_MAX_ITERATIONS", "2")
        monkeypatch.setenv("RAG_MIN_SCORE", "0.25")
        cfg = RetrievalConfig.from_env()
        assert (cfg.limit, cfg.max_iterations, cfg.min_score) == (7, 2, 0.25)

    def test_from_env_garbage(self, monkeypatch):
        monkeypatch.setenv("RAG_LIMIT", "many")
        with pytest.raises(ConfigError):
            RetrievalConfig.from_env()


# =============================================================================
# Glossary
# =============================================================================

class TestGlossary:
    @pytest.mark.parametrize("text,expected", [
        ("Tell me about 10.129.1", ["10.129.1"]),
        ("Compare 1.1 and 9.1.1", ["1.1", "9.1.1"]),
        ("Mandala 10, hymn 129, verse 1", ["10.129.1"]),
        ("What does the Nasadiya sukta say?", ["10.129"]),
        ("ऋग्वेद १०.९०", ["10.90"]),
        ("What is dharma?", []),
    ])
    def test_find_references(self, text, expected):
        assert find_references(text) == expected

    def test_fallback_rotation(self):
        assert next_fallback_term("fire and dawn", []) == "अग्नि"
        assert next_fallback_term("fire and dawn", ["अग्नि"]) == "उषस्"
        assert next_fallback_term("the creation hymn", []) == "10.129"

    def test_fallback_exhausted(self):
        from veda_rag.glossary import fallback_terms
        assert next_fallback_term("x", fallback_terms("x")) is None

    def test_sanitize_unicode(self):
        assert sanitize_unicode('  "सोम   पवमान"  ') == "सोम पवमान"
        assert sanitize_unicode("अग्नि??? real") == "real"
        assert sanitize_unicode("") == ""


# =============================================================================
# LM Studio client
# =============================================================================

def _client(handler):
    return LMStudioClient(api_url="http://lm.test/v1/chat/completions", model="test-model",
                          transport=httpx.MockTransport(handler))


def _sse(*deltas):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': d}}]})}\n\n" for d in deltas]
    return ("".join(lines) + "data: [DONE]\n\n").encode("utf-8")


class TestLMStudioClient:
    def test_strip_think(self):
        assert strip_think("<think>hmm\nok</think> सोम पवमान") == "सोम पवमान"

    def test_drop_think_across_chunks(self):
        assert _drop_think("a<think>x</think>b", False) == ("ab", False)
        assert _drop_think("a<think>x", False) == ("a", True)
        assert _drop_think("still thinking", True) == ("", True)
        assert _drop_think("y</think>c", True) == ("c", False)

    async def test_generate(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"choices": [{"message": {"content": "<think>.</think>अग्नि"}}]})

        llm = _client(handler)
        assert await llm.generate("prompt", temperature=0.5) == "अग्नि"
        assert seen["model"] == "test-model"
        assert seen["temperature"] == 0.5
        assert seen["stream"] is False
        await llm.aclose()

    async def test_generate_http_error(self):
        llm = _client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(LLMError):
            await llm.generate("prompt")
        await llm.aclose()

    async def test_stream(self):
        body = _sse("Soma ", "<think>plan", "</think>", "flows.")
        llm = _client(lambda request: httpx.Response(200, content=body))
        fragments = [f async for f in llm.stream("prompt")]
        assert "".join(fragments) == "Soma flows."
        await llm.aclose()

    async def test_stream_error(self):
        llm = _client(lambda request: httpx.Response(503))
        with pytest.raises(LLMError):
            [f async for f in llm.stream("prompt")]
        await llm.aclose()


# =============================================================================
# Indexer
# =============================================================================

class FakeDocEncoder:
    def __init__(self):
        self.batches = []

    def encode_documents(self, texts, show_progress_bar=False):
        self.batches.append(list(texts))
        return np.stack([hash_vector(t) for t in texts])


class TestIndexer:
    def test_load_corpus_skips_bad_lines(self, tmp_path):
        path = tmp_path / "corpus.jsonl"
        path.write_text("\n".join([
            json.dumps({"id": "rv_1_1_1", "text": "अग्निमीळे", "source": "Rigveda Mandala 1",
                        "reference": "1.1.1"}, ensure_ascii=False),
            "{not json",
            json.dumps({"id": "empty", "text": ""}),
            "",
            json.dumps({"reference": "9.1.1", "text": "पवस्व सोम"}, ensure_ascii=False),
        ]), encoding="utf-8")

        records = rag_indexer.load_corpus(str(path))

        assert [r["id"] for r in records] == ["rv_1_1_1", "9.1.1"]
        assert records[1]["source"] == ""

    def test_build_entries_batches(self):
        records = [{"id": str(i), "text": f"verse {i}", "source": "s", "reference": f"1.1.{i}"} for i in range(5)]
        encoder = FakeDocEncoder()
        entries = rag_indexer.build_entries(records, encoder, batch_size=2)
        assert [len(b) for b in encoder.batches] == [2, 2, 1]
        assert [e.reference for e in entries] == [f"1.1.{i}" for i in range(5)]
        assert entries[0].embedding.shape == (DIM,)

    def test_built_entries_round_trip_through_index(self, tmp_path):
        records = [{"id": "a", "text": "सोम", "source": "s", "reference": "9.1.1"}]
        entries = rag_indexer.build_entries(records, FakeDocEncoder())
        path = tmp_path / "idx.bin"
        save_index(str(path), entries, header={"model": "fake"})
        header, loaded = load_index(str(path))
        assert header["model"] == "fake"
        assert loaded[0].text == "सोम"

    @pytest.mark.parametrize("mode,query,expected", [
        ("text", "सोम", "[9.1.1]"),
        ("reference", "10.129", "[10.129.1]"),
    ])
    def test_search_cli(self, tmp_path, corpus, capsys, mode, query, expected):
        path = tmp_path / "idx.bin"
        save_index(str(path), corpus)
        code = rag_indexer.main(["search", query, "--index", str(path), "--mode", mode])
        assert code == 0
        assert expected in capsys.readouterr().out

    def test_search_cli_bad_index(self, tmp_path, capsys):
        path = tmp_path / "idx.bin"
        path.write_bytes(b"nope")
        assert rag_indexer.main(["search", "x", "--index", str(path), "--mode", "text"]) == 1
