# FILE: tests/test_server.py
"""
Tests for the HTTP surface and the service container:
- startup loads the index, /healthz and /stats report it
- /ask streams plain text, NDJSON progress, or a JSON body
- /reload swaps the index and keeps serving on failure
"""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import HashEmbedder, ScriptedLLM
from veda_rag.binary_index import save_index
from veda_rag.config import RetrievalConfig
from veda_rag.errors import DimensionMismatchError, FormatError, NotReadyError
from veda_rag.retriever import VedaServices
from veda_rag.server import create_app


@pytest.fixture
def index_file(tmp_path, corpus):
    path = tmp_path / "rigveda.bin"
    save_index(str(path), corpus, header={"model": "hash-test"})
    return path


@pytest.fixture
def services(index_file):
    return VedaServices(index_path=str(index_file), config=RetrievalConfig(),
                        llm=ScriptedLLM(answer="The hymn asks who truly knows."), embedder=HashEmbedder())


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


# =============================================================================
# Service container
# =============================================================================

class TestServices:
    def test_init_once(self, services):
        services.init()
        engine = services.engine
        services.init()
        assert services.engine is engine
        services.init(force=True)
        assert services.engine is not engine

    def test_pipeline_before_init(self, services):
        with pytest.raises(NotReadyError):
            services.pipeline()

    def test_corrupt_index_is_fatal(self, tmp_path):
        bad = tmp_path / "bad.bin"
        bad.write_bytes(b"garbage")
        s = VedaServices(index_path=str(bad), config=RetrievalConfig(), llm=ScriptedLLM(), embedder=HashEmbedder())
        with pytest.raises(FormatError):
            s.init()
        assert not s.inited

    def test_embedder_dimension_must_match(self, index_file):
        s = VedaServices(index_path=str(index_file), config=RetrievalConfig(),
                         llm=ScriptedLLM(), embedder=HashEmbedder(dimension=32))
        with pytest.raises(DimensionMismatchError):
            s.init()

    def test_stats(self, services):
        services.init()
        stats = services.stats()
        assert stats["ready"]
        assert stats["documents"] == 8
        assert stats["dimension"] == 16
        assert stats["model"] == "hash-test"
        assert stats["mandalas"]["10"] == 4

    async def test_aclose_keeps_injected_llm(self, services):
        services.init()
        llm = services.llm
        await services.aclose()
        assert services.llm is llm
        assert not services.inited


# =============================================================================
# Routes
# =============================================================================

class TestRoutes:
    def test_healthz(self, client):
        r = client.get("/healthz")
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert body["documents"] == 8
        assert body["issues"] == []

    def test_stats(self, client):
        body = client.get("/stats").json()
        assert body["documents"] == 8
        assert body["mandalas"]["10"] == 4

    def test_ask_streams_text(self, client):
        r = client.post("/ask", json={"question": "Tell me about 10.129.1"})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/plain")
        assert r.text.startswith("The hymn asks who truly knows.")
        assert "[10.129.1]" in r.text

    def test_ask_json_body(self, client):
        r = client.post("/ask", json={"question": "Tell me about 10.129", "stream": False})
        body = r.json()
        assert body["iterations"] == 1
        assert sorted(body["references"]) == ["10.129.1", "10.129.2"]
        assert "[10.129.2]" in body["answer"]

    def test_ask_progress_ndjson(self, client):
        r = client.post("/ask", json={"question": "Tell me about 10.90", "progress": True})
        lines = [json.loads(ln) for ln in r.text.splitlines() if ln.strip()]
        kinds = [ln["type"] for ln in lines]
        assert kinds[0] == "progress"
        assert kinds[-1] == "done"
        assert "fragment" in kinds
        stages = [ln["stage"] for ln in lines if ln["type"] == "progress"]
        assert "search" in stages and "synthesis" in stages
        text = "".join(ln["text"] for ln in lines if ln["type"] == "fragment")
        assert "[10.90.1]" in text

    def test_ask_empty_question(self, client):
        r = client.post("/ask", json={"question": "   "})
        assert r.status_code == 400

    def test_reload_swaps_index(self, client, index_file, corpus):
        save_index(str(index_file), corpus[:3])
        body = client.post("/reload").json()
        assert body["status"] == "ok"
        assert body["documents"] == 3
        assert client.get("/stats").json()["documents"] == 3

    def test_failed_reload_keeps_serving(self, client, index_file):
        index_file.write_bytes(b"not an index")
        body = client.post("/reload").json()
        assert body["status"] == "error"
        assert client.get("/stats").json()["documents"] == 8
        r = client.post("/ask", json={"question": "Tell me about 10.129.1", "stream": False})
        assert "[10.129.1]" in r.json()["answer"]


def test_ask_json_references_are_the_cited_selection(index_file):
    services = VedaServices(index_path=str(index_file), config=RetrievalConfig(max_selected=1),
                            llm=ScriptedLLM(), embedder=HashEmbedder())
    with TestClient(create_app(services)) as client:
        body = client.post("/ask", json={"question": "Tell me about 10.129", "stream": False}).json()
    assert body["references"] == ["10.129.1"]
    assert "[10.129.1]" in body["answer"]
    assert "[10.129.2]" not in body["answer"]
