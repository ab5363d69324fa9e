"""
models.py — data carried through one answer request

CorpusEntry    immutable unit of the indexed corpus (owned by the index)
RetrievedItem  search hit + mutable evaluation overlay (one request)
QueryAttempt   a search phrase that was executed, kept for dedup
PipelineState  per-request scratch record
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Set, Union

import numpy as np
from pydantic import BaseModel, Field, field_validator

ImportanceTier = Literal["high", "medium", "low"]
TIER_ORDER: Dict[str, int] = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True, eq=False)
class CorpusEntry:
    id: str
    text: str
    source_label: str
    reference: str
    embedding: np.ndarray

    def __post_init__(self):
        emb = np.asarray(self.embedding, dtype=np.float32)
        emb.setflags(write=False)
        object.__setattr__(self, "embedding", emb)

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])

    def __eq__(self, other):
        if not isinstance(other, CorpusEntry):
            return NotImplemented
        return (self.id == other.id
                and self.text == other.text
                and self.source_label == other.source_label
                and self.reference == other.reference
                and self.embedding.tobytes() == other.embedding.tobytes())

    def __hash__(self):
        return hash(self.id)


@dataclass
class RetrievedItem:
    entry: CorpusEntry
    score: float
    translation: str = ""
    importance_tier: Optional[ImportanceTier] = None
    filtered: bool = False
    evaluation_note: str = ""
    from_reference: bool = False

    @property
    def entry_id(self) -> str:
        return self.entry.id

    @property
    def reference(self) -> str:
        return self.entry.reference

    @property
    def text(self) -> str:
        return self.entry.text

    @property
    def source_label(self) -> str:
        return self.entry.source_label

    @property
    def evaluated(self) -> bool:
        return self.importance_tier is not None

    @property
    def high_quality(self) -> bool:
        return not self.filtered and self.importance_tier in ("high", "medium")


@dataclass
class QueryAttempt:
    phrase: str
    embedding: np.ndarray


@dataclass
class PipelineState:
    request: str
    iteration: int = 0
    items: List[RetrievedItem] = field(default_factory=list)
    selected: List[RetrievedItem] = field(default_factory=list)
    attempts: List[QueryAttempt] = field(default_factory=list)
    next_phrase: Optional[str] = None
    tried_references: Set[str] = field(default_factory=set)
    fallback_seeds: Set[str] = field(default_factory=set)
    reference_satisfied: bool = False
    cancelled: bool = False

    def cancel(self):
        self.cancelled = True

    @property
    def tried_phrases(self) -> List[str]:
        return [a.phrase for a in self.attempts]

    def merge(self, hits: List[RetrievedItem]) -> List[RetrievedItem]:
        """
        Add hits not already accumulated (by entry id). A reference hit that
        lands on an already-held item upgrades it to reference origin.
        Returns the newly added items.
        """
        by_id = {it.entry_id: it for it in self.items}
        added: List[RetrievedItem] = []
        for hit in hits:
            held = by_id.get(hit.entry_id)
            if held is None:
                self.items.append(hit)
                by_id[hit.entry_id] = hit
                added.append(hit)
            elif hit.from_reference and not held.from_reference:
                held.from_reference = True
                held.importance_tier = None
                held.filtered = False
        return added

    def unevaluated(self) -> List[RetrievedItem]:
        return [it for it in self.items if not it.evaluated]

    def non_filtered_count(self) -> int:
        return sum(1 for it in self.items if not it.filtered)

    def high_quality_count(self) -> int:
        return sum(1 for it in self.items if it.high_quality)


@dataclass
class ProgressEvent:
    stage: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


# ---------- Classification schema (relevance stage) ----------

class ItemEvaluation(BaseModel):
    id: str
    importance: ImportanceTier = "low"
    isFiltered: bool = False
    reasoning: Optional[str] = ""

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v):
        return str(v).strip() if v is not None else v

    @field_validator("importance", mode="before")
    @classmethod
    def _lower_importance(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class ClassificationResponse(BaseModel):
    verseEvaluations: List[ItemEvaluation] = Field(default_factory=list)
    needsMoreSearch: bool = False
    searchRequest: Optional[str] = ""
    reasoning: Optional[str] = ""


@dataclass(frozen=True)
class ParseOk:
    response: ClassificationResponse


@dataclass(frozen=True)
class ParseMalformed:
    reason: str
    raw: str = ""


ParseResult = Union[ParseOk, ParseMalformed]
