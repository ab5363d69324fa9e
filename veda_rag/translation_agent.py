# veda_rag/translation_agent.py — selection + per-verse translation stage

from typing import List, Optional

from .config import RetrievalConfig, log_debug
from .errors import TranslationError
from .llm import TextGenerator
from .models import TIER_ORDER, PipelineState, RetrievedItem
from .search_agent import ProgressSink, notify

_PREFIXES = ("English Translation:", "Translation:")
# markers the upstream corpus tooling writes instead of a real translation
_STALE_MARKERS = ("Translation of:", "[Translation needed", "[Translation unavailable")


def placeholder(reason: str) -> str:
    return f"[Translation unavailable - {reason}]"


def clean_translation(raw: str) -> str:
    text = (raw or "").strip()
    for prefix in _PREFIXES:
        if prefix in text:
            text = text.split(prefix)[-1].strip()
    return text


def needs_translation(item: RetrievedItem) -> bool:
    t = (item.translation or "").strip()
    return not t or t.startswith(_STALE_MARKERS)


def select_items(items: List[RetrievedItem], max_selected: int) -> List[RetrievedItem]:
    """Non-filtered items, high→medium→low, best score first within a tier."""
    kept = [it for it in items if not it.filtered]
    kept.sort(key=lambda it: (TIER_ORDER.get(it.importance_tier or "low", 2), not it.from_reference, -it.score))
    return kept[:max_selected]


class TranslationAgent:
    def __init__(self,
                 llm: TextGenerator,
                 config: Optional[RetrievalConfig] = None,
                 progress: Optional[ProgressSink] = None):
        self.llm = llm
        self.config = config or RetrievalConfig()
        self.progress = progress

    def log(self, msg):
        log_debug(msg)

    def _prompt(self, item: RetrievedItem) -> str:
        return (
            "You are an expert translator of Vedic Sanskrit. Translate the following RigVeda verse from Sanskrit "
            "(Devanagari script) to clear, scholarly English. Maintain the poetic and ritualistic context while "
            "using modern English.\n\n"
            f"Sanskrit Verse ({item.reference or item.source_label or 'Unknown'}):\n{item.text}\n\n"
            "Provide a clear, accurate English translation suitable for scholarly use.\n\n"
            "English Translation:"
        )

    async def translate_item(self, item: RetrievedItem) -> str:
        try:
            raw = await self.llm.generate(self._prompt(item), temperature=0.3)
        except Exception as e:  # collaborator failure becomes a placeholder upstream
            raise TranslationError(str(e) or e.__class__.__name__) from e
        text = clean_translation(raw)
        if not text:
            raise TranslationError("empty translation")
        return text

    async def translate(self, state: PipelineState) -> List[RetrievedItem]:
        selected = select_items(state.items, self.config.max_selected)
        state.selected = selected
        self.log(f"🌐 Translating {len(selected)} selected verses")
        notify(self.progress, "translation", f"Translating {len(selected)} verses", selected=len(selected))

        for i, item in enumerate(selected, 1):
            if state.cancelled:
                self.log("🛑 Cancelled during translation")
                break
            if not needs_translation(item):
                continue
            try:
                item.translation = await self.translate_item(item)
                self.log(f"   ✅ {i}/{len(selected)} {item.reference}: {item.translation[:80]}")
            except TranslationError as e:
                item.translation = placeholder(f"error: {e}")
                self.log(f"   ❌ {i}/{len(selected)} {item.reference}: {e}")
        return selected
