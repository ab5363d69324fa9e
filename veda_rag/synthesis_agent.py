from typing import AsyncIterator, List, Optional

from .config import log_debug
from .llm import TextGenerator
from .models import TIER_ORDER, RetrievedItem

INSUFFICIENT_EVIDENCE = (
    "I could not find verses in the RigVeda that answer this question. "
    "Please try rephrasing it or ask about a different topic from the RigVeda."
)
GENERATION_FAILED = "I apologize, but I encountered an error while generating your answer."

SYNTHESIS_RULES = """You answer questions about the RigVeda using ONLY the verses listed below.
- Cite Mandala.Hymn.Verse references for every claim.
- Quote the Sanskrit verse in **bold** and its translation in *italics*.
- If the verses do not answer the question, say so plainly and explain what is missing.
- Never use outside knowledge and never mention other texts (Upanishads, Puranas, epics)."""


def _estimate_tokens(s: str) -> int:
    # Rough: ~4 characters per token
    return max(1, len(s) // 4)


def order_by_tier(items: List[RetrievedItem]) -> List[RetrievedItem]:
    # sorted() is stable: selection order survives within a tier
    return sorted(items, key=lambda it: TIER_ORDER.get(it.importance_tier or "low", 2))


def format_citation(item: RetrievedItem) -> str:
    return f"[{item.reference or item.entry_id}] {item.text}\n    — {item.translation or '(no translation)'}"


class SynthesisAgent:
    def __init__(self,
                 llm: TextGenerator,
                 max_total_tokens: int = 3000,
                 include_sources_footer: bool = True,
                 temperature: float = 0.6):
        self.llm = llm
        self.max_total_tokens = max_total_tokens
        self.include_sources_footer = include_sources_footer
        self.temperature = temperature

    def log(self, msg):
        log_debug(msg)

    def build_prompt(self, request: str, items: List[RetrievedItem]) -> str:
        """
        Verses go in tier order until the context budget is spent; an item
        that does not fit is skipped, never truncated mid-verse.
        """
        header = f"{SYNTHESIS_RULES}\n\nUser Query: {request}\n\nVerses from the RigVeda:\n"
        tokens_used = _estimate_tokens(header)
        sections = []
        for i, it in enumerate(items, 1):
            section = (f"{i}. {it.reference or it.entry_id} ({it.source_label}) [{it.importance_tier or 'low'}]\n"
                       f"   Sanskrit: {it.text}\n"
                       f"   Translation: {it.translation or '(none)'}\n")
            cost = _estimate_tokens(section)
            if tokens_used + cost > self.max_total_tokens and sections:
                continue
            sections.append(section)
            tokens_used += cost
        self.log(f"📜 Synthesis context: {len(sections)}/{len(items)} verses | ~{tokens_used} tokens")
        return header + "\n".join(sections) + "\nAnswer:"

    def sources_footer(self, items: List[RetrievedItem]) -> str:
        return "\n\n— **Sources:**\n" + "\n".join(format_citation(it) for it in items)

    async def stream(self, request: str, items: List[RetrievedItem]) -> AsyncIterator[str]:
        """
        Answer fragments, lazily. Not restartable; call again for a new stream.
        An empty selection yields the single INSUFFICIENT_EVIDENCE fragment.
        """
        if not items:
            self.log("📭 Nothing selected, answering with insufficient evidence")
            yield INSUFFICIENT_EVIDENCE
            return

        ordered = order_by_tier(items)
        prompt = self.build_prompt(request, ordered)
        try:
            async for fragment in self.llm.stream(prompt, temperature=self.temperature):
                yield fragment
        except Exception as e:  # a broken stream still gets its citations
            self.log(f"❌ Synthesis stream failed: {e}")
            yield GENERATION_FAILED

        if self.include_sources_footer:
            yield self.sources_footer(ordered)

    async def synthesize(self, request: str, items: List[RetrievedItem]) -> str:
        return "".join([f async for f in self.stream(request, items)])
