"""
pipeline.py — controller of one answer request

    search ─▶ relevance ─┬─▶ (needs more and under the ceiling) ─▶ search ...
                         └─▶ translation ─▶ synthesis ─▶ fragments

The loop is a plain bounded `while`: at most max_iterations + 1 retrieval
calls per request whatever the classifier says. Cancellation is checked
between stages and after every streamed fragment; already emitted
fragments are never taken back.
"""

from typing import AsyncIterator, Optional

from .config import RetrievalConfig, log_debug
from .embedding import Embedder
from .llm import TextGenerator
from .models import PipelineState
from .relevance_agent import RelevanceAgent
from .search_agent import ProgressSink, SearchAgent, notify
from .search_engine import SearchEngine
from .synthesis_agent import SynthesisAgent
from .translation_agent import TranslationAgent


class AnswerStream:
    """
    Async iterator of answer fragments for one request.

    `cancel()` may be called from anywhere (another task, a disconnect
    handler); the stream then ends at the next check without raising.
    """

    def __init__(self, state: PipelineState, fragments: AsyncIterator[str]):
        self.state = state
        self._fragments = fragments
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def cancelled(self) -> bool:
        return self.state.cancelled

    def cancel(self):
        self.state.cancel()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        if self.state.cancelled:
            await self.aclose()
            raise StopAsyncIteration
        try:
            return await self._fragments.__anext__()
        except StopAsyncIteration:
            self._finished = True
            raise

    async def aclose(self):
        self._finished = True
        await self._fragments.aclose()

    async def collect(self) -> str:
        return "".join([f async for f in self])


class Pipeline:
    def __init__(self,
                 engine: SearchEngine,
                 llm: TextGenerator,
                 embedder: Embedder,
                 config: Optional[RetrievalConfig] = None,
                 progress: Optional[ProgressSink] = None,
                 include_sources_footer: bool = True):
        self.config = config or RetrievalConfig()
        self.progress = progress
        self.searcher = SearchAgent(engine, llm, embedder, self.config, progress)
        self.relevance = RelevanceAgent(llm, self.config, progress)
        self.translator = TranslationAgent(llm, self.config, progress)
        self.synthesizer = SynthesisAgent(llm, include_sources_footer=include_sources_footer)

    def log(self, msg):
        log_debug(msg)

    def answer(self, request: str) -> AnswerStream:
        state = PipelineState(request=request)
        return AnswerStream(state, self._run(state))

    async def ask(self, request: str) -> str:
        return await self.answer(request).collect()

    async def refine(self, state: PipelineState) -> bool:
        """
        Retrieval/relevance loop. Returns False when cancelled.
        """
        while True:
            if state.cancelled:
                return False
            self.log(f"🔄 Iteration {state.iteration}/{self.config.max_iterations}")
            notify(self.progress, "iteration", f"Iteration {state.iteration}", iteration=state.iteration)

            await self.searcher.search(state)
            if state.cancelled:
                return False

            decision = await self.relevance.evaluate(state)
            if not decision.needs_more_search:
                return True

            state.next_phrase = decision.suggested_phrase
            state.iteration += 1

    async def _run(self, state: PipelineState) -> AsyncIterator[str]:
        self.log(f"🧭 New request: '{state.request}'")
        notify(self.progress, "start", state.request)

        if not await self.refine(state):
            self._cancelled(state, "retrieval")
            return

        selected = await self.translator.translate(state)
        if state.cancelled:
            self._cancelled(state, "translation")
            return

        notify(self.progress, "synthesis", f"Synthesizing from {len(selected)} verses",
               selected=len(selected), references=[it.reference for it in selected])
        fragments = self.synthesizer.stream(state.request, selected)
        try:
            async for fragment in fragments:
                if state.cancelled:
                    break
                yield fragment
                if state.cancelled:
                    break
        finally:
            await fragments.aclose()

        if state.cancelled:
            self._cancelled(state, "synthesis")
            return
        self.log(f"✅ Done after {state.iteration + 1} retrieval rounds, {len(selected)} verses cited")
        notify(self.progress, "complete", "Answer complete",
               iterations=state.iteration + 1, selected=len(selected))

    def _cancelled(self, state: PipelineState, stage: str):
        self.log(f"🛑 Request cancelled during {stage}")
        notify(self.progress, "cancelled", f"Cancelled during {stage}", iteration=state.iteration)
