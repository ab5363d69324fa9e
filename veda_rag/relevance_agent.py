import json
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import ValidationError

from .config import RetrievalConfig, log_debug
from .errors import ClassificationParseError
from .glossary import sanitize_unicode
from .llm import TextGenerator
from .models import (ClassificationResponse, ItemEvaluation, ParseMalformed, ParseOk, ParseResult,
                     PipelineState, RetrievedItem)
from .search_agent import ProgressSink, notify

_JSON_RE = re.compile(r"\{[\s\S]*\}")

CLASSIFIER_PROMPT = """You are evaluating RigVeda verses retrieved for a user's question.

Judge each verse ONLY by its content against the question. There are no search scores; do not guess them.
- high: the verse directly answers the question
- medium: related, supporting or contextual
- low: only tangentially related
- isFiltered=true: irrelevant to the question

If the user asks about a specific hymn (Nasadiya 10.129, Purusha 10.90, ...), verses from other hymns are filtered.
If fewer than two verses are high or medium, propose ONE new Sanskrit/Devanagari search phrase (or a Mandala.Hymn
reference such as 10.129) that would find better verses, different from the phrases already tried."""


def _extract_json(text: str) -> dict:
    m = _JSON_RE.search(text or "")
    if not m:
        raise ClassificationParseError("no JSON object in classifier output")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise ClassificationParseError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ClassificationParseError("classifier JSON is not an object")
    return data


def parse_classification(text: str) -> ParseResult:
    try:
        return ParseOk(ClassificationResponse.model_validate(_extract_json(text)))
    except ClassificationParseError as e:
        return ParseMalformed(reason=str(e), raw=text or "")
    except ValidationError as e:
        return ParseMalformed(reason=f"schema mismatch: {e.error_count()} errors", raw=text or "")


@dataclass
class RelevanceDecision:
    needs_more_search: bool
    suggested_phrase: Optional[str]
    non_filtered: int
    high_quality: int
    reason: str


class RelevanceAgent:
    """
    Tiers every not-yet-evaluated item (high/medium/low or filtered) and decides
    whether another retrieval round is warranted:
        continue  iff  high_quality < 2  and  iteration < max_iterations
    A successful reference lookup always ends the loop.
    """

    def __init__(self,
                 llm: TextGenerator,
                 config: Optional[RetrievalConfig] = None,
                 progress: Optional[ProgressSink] = None,
                 min_high_quality: int = 2,
                 preview_chars: int = 200):
        self.llm = llm
        self.config = config or RetrievalConfig()
        self.progress = progress
        self.min_high_quality = min_high_quality
        self.preview_chars = preview_chars

    def log(self, msg):
        log_debug(msg)

    def _prompt(self, state: PipelineState, items: List[RetrievedItem]) -> str:
        tried = ", ".join(state.tried_phrases) or "None (first search)"
        verses = []
        for i, it in enumerate(items, 1):
            text = it.text if len(it.text) <= self.preview_chars else it.text[:self.preview_chars] + "..."
            verses.append(f'{i}. id="{it.entry_id}" reference={it.reference or "unknown"}\n   Text: {text}')
        return (
            f"{CLASSIFIER_PROMPT}\n\n"
            f'USER QUESTION: "{state.request}"\n'
            f"PHRASES ALREADY TRIED: {tried}\n"
            f"ITERATION: {state.iteration + 1} of {self.config.max_iterations + 1}\n\n"
            f"VERSES ({len(items)}):\n" + "\n".join(verses) + "\n\n"
            "Output ONLY this JSON:\n"
            '{"verseEvaluations": [{"id": "<id>", "importance": "high|medium|low", "isFiltered": true|false, '
            '"reasoning": "<short>"}], "needsMoreSearch": true|false, "searchRequest": "<phrase or empty>", '
            '"reasoning": "<overall>"}'
        )

    async def classify(self, state: PipelineState, items: List[RetrievedItem]) -> ParseResult:
        try:
            raw = await self.llm.generate(self._prompt(state, items), temperature=0.3)
        except Exception as e:  # collaborator failure is treated like unparseable output
            return ParseMalformed(reason=f"classifier call failed: {e}")
        return parse_classification(raw)

    def _apply(self, items: List[RetrievedItem], result: ParseResult) -> Optional[str]:
        if isinstance(result, ParseMalformed):
            self.log(f"❌ Classification unusable ({result.reason}); filtering {len(items)} verses")
            for it in items:
                it.importance_tier = "low"
                it.filtered = True
                it.evaluation_note = "Could not evaluate - defaulting to filtered"
            return None

        if not isinstance(result, ParseOk):
            raise TypeError(f"unexpected parse result: {result!r}")

        by_id: Dict[str, ItemEvaluation] = {ev.id: ev for ev in result.response.verseEvaluations}
        for it in items:
            ev = by_id.get(it.entry_id)
            if ev is None:
                it.importance_tier = "low"
                it.filtered = True
                it.evaluation_note = "No evaluation returned - defaulting to filtered"
            else:
                it.importance_tier = ev.importance
                it.filtered = ev.isFiltered
                it.evaluation_note = ev.reasoning or ""
            mark = "✗ FILTERED" if it.filtered else f"✓ {it.importance_tier.upper()}"
            self.log(f"   📄 {it.reference or it.entry_id} | {mark} | {it.evaluation_note[:80]}")
        suggestion = sanitize_unicode(result.response.searchRequest or "")
        return suggestion or None

    async def evaluate(self, state: PipelineState) -> RelevanceDecision:
        pending = state.unevaluated()
        suggestion: Optional[str] = None

        to_classify = []
        for it in pending:
            if it.from_reference:
                it.importance_tier = "high"
                it.filtered = False
                it.evaluation_note = "Explicitly requested by verse reference"
            else:
                to_classify.append(it)

        if to_classify:
            self.log(f"📊 Classifying {len(to_classify)} verses for: '{state.request}'")
            suggestion = self._apply(to_classify, await self.classify(state, to_classify))

        non_filtered = state.non_filtered_count()
        high_quality = state.high_quality_count()

        if state.reference_satisfied:
            needs_more, reason = False, "explicit verse reference resolved"
        elif high_quality >= self.min_high_quality:
            needs_more, reason = False, f"{high_quality} high-quality verses"
        elif state.iteration >= self.config.max_iterations:
            needs_more, reason = False, f"iteration limit {self.config.max_iterations} reached"
        else:
            needs_more, reason = True, f"only {high_quality} high-quality verses ({non_filtered} relevant)"

        if needs_more and suggestion and suggestion in state.tried_phrases:
            suggestion = None

        self.log(f"💭 Relevance: {non_filtered} relevant, {high_quality} high-quality → "
                 f"{'search again' if needs_more else 'done'} ({reason})")
        notify(self.progress, "relevance", reason,
               iteration=state.iteration, non_filtered=non_filtered, high_quality=high_quality,
               needs_more_search=needs_more, suggestion=suggestion if needs_more else None)
        return RelevanceDecision(needs_more_search=needs_more,
                                 suggested_phrase=suggestion if needs_more else None,
                                 non_filtered=non_filtered,
                                 high_quality=high_quality,
                                 reason=reason)
