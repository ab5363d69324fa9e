import asyncio
import json
import os
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from pydantic import BaseModel
from starlette.responses import JSONResponse, StreamingResponse

from .config import LMSTUDIO_API, log_debug
from .errors import VedaRagError
from .models import ProgressEvent
from .pipeline import AnswerStream
from .retriever import VedaServices


# --- Schemas
class AskRequest(BaseModel):
    question: str
    stream: bool = True
    progress: bool = False


def _event_json(ev: ProgressEvent) -> str:
    return json.dumps({"type": "progress", "stage": ev.stage, "message": ev.message, "data": ev.data},
                      ensure_ascii=False, default=str) + "\n"


async def _plain_fragments(stream: AnswerStream):
    try:
        async for fragment in stream:
            yield fragment
    finally:
        # client went away or we finished: either way stop external calls
        stream.cancel()
        await stream.aclose()


async def _ndjson_fragments(stream: AnswerStream, queue: asyncio.Queue):
    async def pump():
        try:
            async for fragment in stream:
                queue.put_nowait(("fragment", fragment))
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(pump())
    try:
        while True:
            item = await queue.get()
            if item is None:
                break
            kind, payload = item
            if kind == "progress":
                yield _event_json(payload)
            else:
                yield json.dumps({"type": "fragment", "text": payload}, ensure_ascii=False) + "\n"
        yield json.dumps({"type": "done", "iterations": stream.state.iteration + 1}) + "\n"
    finally:
        stream.cancel()
        await task


def create_app(services: Optional[VedaServices] = None) -> FastAPI:
    app = FastAPI(title="RigVeda RAG")
    app.state.services = services or VedaServices()

    def _services(request: Request) -> VedaServices:
        return request.app.state.services

    # --- Routes
    @app.post("/ask")
    async def ask_question(req: AskRequest, request: Request):
        q = (req.question or "").strip()
        if not q:
            return JSONResponse(status_code=400, content={"error": "No question provided"})
        services = _services(request)
        if not services.inited:
            return JSONResponse(status_code=503, content={"error": "Index not loaded"})

        log_debug(f"🌐 Ask: {q} (stream={req.stream}, progress={req.progress})")

        if req.progress:
            queue: asyncio.Queue = asyncio.Queue()
            stream = services.pipeline(progress=lambda ev: queue.put_nowait(("progress", ev))).answer(q)
            return StreamingResponse(_ndjson_fragments(stream, queue), media_type="application/x-ndjson")

        stream = services.pipeline().answer(q)
        if req.stream:
            return StreamingResponse(_plain_fragments(stream), media_type="text/plain; charset=utf-8")

        answer = await stream.collect()
        cited = [it.reference for it in stream.state.selected]
        return {"answer": answer, "iterations": stream.state.iteration + 1, "references": cited}

    @app.post("/reload")
    async def reload_index(request: Request):
        try:
            stats = await asyncio.to_thread(_services(request).reload)
        except VedaRagError as e:
            log_debug(f"❌ Reload failed: {e}")
            return {"status": "error", "message": str(e)}
        log_debug(f"✅ Reloaded. Verses: {stats['documents']} | Mandalas: {stats['mandalas']}")
        return {"status": "ok", "message": "✅ Index reloaded.", **stats}

    @app.get("/stats")
    async def stats(request: Request):
        return _services(request).stats()

    @app.get("/healthz")
    async def healthz(request: Request, deep: bool = False):
        services = _services(request)
        issues = []
        if not services.inited:
            issues.append("index:not-loaded")
        if deep:
            try:
                async with httpx.AsyncClient(timeout=httpx.Timeout(3.0, connect=1.0)) as client:
                    await client.get(LMSTUDIO_API.replace("/v1/chat/completions", "/"))
            except httpx.HTTPError:
                issues.append("lmstudio:unreachable")
        return {"ok": services.inited, "documents": services.get_doc_count(), "issues": issues}

    # --- Startup / shutdown
    @app.on_event("startup")
    async def startup_event():
        services = app.state.services
        log_debug(f"🚀 Startup CWD={os.getcwd()} | INDEX={services.index_path}")
        # a corrupt or missing index is fatal: let it propagate
        await asyncio.to_thread(services.init)

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.services.aclose()

    return app


def main():
    os.environ.setdefault("UVICORN_NO_COLOR", "1")
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
        loop="asyncio",
        lifespan="on",
        workers=1,
        access_log=False,
    )


if __name__ == "__main__":
    main()
