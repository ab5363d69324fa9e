"""
search_agent.py — retrieval stage of the answer loop

One call to SearchAgent.search() = one iteration of retrieval:
  1) reference check  (dotted locator / named hymn) → reference_search, short-circuit on hits
  2) phrase generation (LLM, seeded with the corpus glossary)
  3) dedup against the request's QueryAttempts (cosine > threshold → regenerate,
     hotter each time; then direct translation; then glossary rotation)
  4) hybrid_search with the accepted phrase, merged into the PipelineState
"""

from typing import Callable, List, Optional

from .config import RetrievalConfig, log_debug
from .embedding import Embedder, cosine_similarity
from .errors import PhraseGenerationError
from .glossary import (CORPUS_GLOSSARY, PHRASE_EXAMPLES, find_references, has_devanagari,
                       next_fallback_term, sanitize_unicode)
from .llm import TextGenerator
from .models import PipelineState, ProgressEvent, QueryAttempt, RetrievedItem
from .search_engine import SearchEngine

ProgressSink = Callable[[ProgressEvent], None]

_PHRASE_LABELS = ("sanskrit search phrase:", "sanskrit keywords:", "search phrase:")


def notify(progress: Optional[ProgressSink], stage: str, message: str, **data):
    if progress is None:
        return
    try:
        progress(ProgressEvent(stage=stage, message=message, data=data))
    except Exception as e:  # observers never affect the pipeline
        log_debug(f"⚠️ Progress sink failed: {e}")


def _clean_phrase(raw: str) -> str:
    text = (raw or "").strip()
    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    text = lines[-1] if lines else ""
    low = text.lower()
    for label in _PHRASE_LABELS:
        if low.startswith(label):
            text = text[len(label):]
            break
    return sanitize_unicode(text.strip("*_ "))


class SearchAgent:
    def __init__(self,
                 engine: SearchEngine,
                 llm: TextGenerator,
                 embedder: Embedder,
                 config: Optional[RetrievalConfig] = None,
                 progress: Optional[ProgressSink] = None):
        self.engine = engine
        self.llm = llm
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.progress = progress

    def log(self, msg):
        log_debug(msg)

    # ---------- prompts ----------

    def _phrase_prompt(self, search_request: str, previous: List[str]) -> str:
        tried = "\n".join(f'{i}. "{p}"' for i, p in enumerate(previous, 1)) or "None (this is the first search)"
        examples = "\n".join(f'- "{s}" ({e})' for s, e in PHRASE_EXAMPLES)
        return (
            "You are a RigVeda scholar. For the given search request, generate ONE focused search phrase "
            "IN SANSKRIT/DEVANAGARI SCRIPT that would find relevant verses in the RigVeda corpus.\n\n"
            f"{CORPUS_GLOSSARY}\n\n"
            f"Search Request: {search_request}\n\n"
            f"PREVIOUS SEARCH PHRASES (DO NOT REPEAT OR PARAPHRASE THESE):\n{tried}\n\n"
            "Use 2-4 word phrases combining deity, action, concept or ritual, for example:\n"
            f"{examples}\n\n"
            "The search ranks verses by embedding similarity, so choose words that would actually "
            "appear together in RigVeda verses.\n"
            "Return ONLY the Sanskrit phrase in Devanagari script, without explanations.\n\n"
            "Sanskrit search phrase:"
        )

    def _translation_prompt(self, request: str) -> str:
        return (
            "You are a RigVeda scholar. Translate the following query into Sanskrit/Devanagari search terms "
            "that would be found in the RigVeda corpus.\n\n"
            f"{CORPUS_GLOSSARY}\n\n"
            f"User Query: {request}\n\n"
            "Provide ONLY 2-5 Devanagari keywords separated by spaces. No explanations.\n\n"
            "Sanskrit keywords:"
        )

    # ---------- phrase generation ----------

    async def generate_phrase(self, search_request: str, previous: List[str], temperature: float) -> str:
        try:
            raw = await self.llm.generate(self._phrase_prompt(search_request, previous), temperature=temperature)
        except Exception as e:  # any collaborator failure degrades to the fallbacks
            raise PhraseGenerationError(f"phrase generation failed: {e}") from e
        phrase = _clean_phrase(raw)
        if not phrase:
            raise PhraseGenerationError("model returned an empty phrase")
        if not has_devanagari(phrase):
            raise PhraseGenerationError(f"phrase is not in Devanagari: '{phrase}'")
        return phrase

    async def translate_request(self, request: str) -> str:
        try:
            raw = await self.llm.generate(self._translation_prompt(request), temperature=0.3)
        except Exception as e:
            raise PhraseGenerationError(f"request translation failed: {e}") from e
        phrase = _clean_phrase(raw)
        if not phrase:
            raise PhraseGenerationError("translation produced no terms")
        return phrase

    # ---------- dedup ----------

    async def check_unique(self, state: PipelineState, phrase: str) -> Optional[QueryAttempt]:
        """QueryAttempt for phrase, or None when it repeats (verbatim or semantically) a prior attempt."""
        phrase = phrase.strip()
        if not phrase or phrase in state.tried_phrases:
            self.log(f"   🔁 Phrase already used: '{phrase}'")
            return None
        try:
            emb = await self.embedder.embed(phrase)
        except Exception as e:  # embedder is an external collaborator
            self.log(f"   ⚠️ Could not embed '{phrase}': {e}")
            return None
        for prior in state.attempts:
            sim = cosine_similarity(emb, prior.embedding)
            if sim > self.config.dedup_threshold:
                self.log(f"   🔄 '{phrase}' too close to '{prior.phrase}' (similarity {sim:.3f})")
                return None
        return QueryAttempt(phrase=phrase, embedding=emb)

    async def choose_phrase(self, state: PipelineState) -> Optional[QueryAttempt]:
        seed = state.next_phrase or state.request
        cfg = self.config

        for attempt in range(cfg.phrase_attempts):
            if state.cancelled:
                return None
            temperature = 0.3 + 0.2 * attempt
            self.log(f"🧠 Generating phrase for '{seed}' (attempt {attempt + 1}/{cfg.phrase_attempts}, t={temperature:.1f})")
            try:
                phrase = await self.generate_phrase(seed, state.tried_phrases, temperature)
            except PhraseGenerationError as e:
                self.log(f"   ⚠️ {e}")
                continue
            if state.cancelled:
                return None
            accepted = await self.check_unique(state, phrase)
            if accepted:
                return accepted

        # every generated phrase collided or failed: translate the raw request
        if state.cancelled:
            return None
        try:
            translated = await self.translate_request(state.request)
            if state.cancelled:
                return None
            accepted = await self.check_unique(state, translated)
            if accepted:
                self.log(f"   🌐 Using direct translation: '{translated}'")
                return accepted
        except PhraseGenerationError as e:
            self.log(f"   ⚠️ {e}")

        # static glossary rotation, skipping anything already tried
        rejected = set(state.tried_phrases)
        while True:
            if state.cancelled:
                return None
            term = next_fallback_term(state.request, rejected)
            if term is None:
                return None
            rejected.add(term)
            accepted = await self.check_unique(state, term)
            if accepted:
                self.log(f"   📚 Using glossary fallback: '{term}'")
                return accepted

    # ---------- one retrieval iteration ----------

    def _reference_candidates(self, state: PipelineState) -> List[str]:
        refs = find_references(state.next_phrase or "") + find_references(state.request)
        return [r for r in dict.fromkeys(refs) if r not in state.tried_references]

    async def search(self, state: PipelineState) -> List[RetrievedItem]:
        cfg = self.config

        if state.iteration > 0 and not state.next_phrase:
            # classifier proposed nothing: rotate through glossary terms
            state.next_phrase = next_fallback_term(
                state.request, set(state.tried_phrases) | state.tried_references | state.fallback_seeds)
            if state.next_phrase:
                state.fallback_seeds.add(state.next_phrase)
                self.log(f"   📚 No suggestion from classifier, seeding with '{state.next_phrase}'")

        for ref in self._reference_candidates(state):
            state.tried_references.add(ref)
            hits = self.engine.reference_search(ref, cfg.reference_limit)
            if hits:
                added = state.merge(hits)
                state.reference_satisfied = True
                notify(self.progress, "search", f"Reference lookup {ref}: {len(hits)} verses",
                       iteration=state.iteration, phrase=ref, hits=len(hits), mode="reference")
                return added
            self.log(f"   ⚠️ Reference {ref} not in corpus, falling back to search")

        attempt = await self.choose_phrase(state)
        if state.cancelled:
            self.log("🛑 Cancelled during phrase selection")
            return []
        if attempt is None:
            self.log("⚠️ No unused search phrase left; skipping search this iteration")
            notify(self.progress, "search", "No new search phrase available",
                   iteration=state.iteration, phrase=None, hits=0, mode="none")
            return []

        hits = self.engine.hybrid_search(attempt.phrase, attempt.embedding, cfg.limit,
                                         cfg.vector_weight, cfg.text_weight, cfg.min_score)
        state.attempts.append(attempt)
        added = state.merge(hits)
        self.log(f"🔍 '{attempt.phrase}': {len(hits)} hits, {len(added)} new ({len(state.items)} total)")
        notify(self.progress, "search", f"Hybrid search \"{attempt.phrase}\": {len(hits)} verses",
               iteration=state.iteration, phrase=attempt.phrase, hits=len(hits), new=len(added), mode="hybrid")
        return added
