# veda_rag/search_engine.py — normalized embeddings + IP, BM25 text match, reference lookup, hybrid fusion

import math
import re
from collections import Counter, defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from .config import EMBED_DIM, log_debug
from .errors import DimensionMismatchError, NotReadyError
from .glossary import normalize_digits
from .models import CorpusEntry, RetrievedItem

TEXT_FIELDS = ("text", "source_label", "reference")

# whitespace, ASCII punctuation and the danda marks of Devanagari verse
_SPLIT_RE = re.compile(r"[\s.,;:!?()\[\]{}\"'`|/\\\-–—_*#।॥]+")
_REFERENCE_RE = re.compile(r"^\d+(?:\.\d+){0,2}$")

BM25_K1 = 1.2
BM25_B = 0.75


def tokenize(text: str) -> List[str]:
    return [t for t in _SPLIT_RE.split((text or "").casefold()) if t]


def within_edit_distance(a: str, b: str, k: int) -> bool:
    """Levenshtein(a, b) <= k, bailing out once a whole DP row exceeds k."""
    if a == b:
        return True
    if abs(len(a) - len(b)) > k:
        return False
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, 1):
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (ca != cb))
        if min(cur) > k:
            return False
        prev = cur
    return prev[-1] <= k


def min_max_normalize(scores: Dict[str, float]) -> Dict[str, float]:
    if not scores:
        return {}
    lo = min(scores.values())
    hi = max(scores.values())
    if hi - lo <= 1e-12:
        return {k: 1.0 for k in scores}
    return {k: (v - lo) / (hi - lo) for k, v in scores.items()}


def parse_reference(reference: str) -> Optional[str]:
    """'10.129', ' १०.१२९ ', '10.090' -> '10.129' / '10.90'; None if not M, M.H or M.H.V."""
    ref = normalize_digits((reference or "").strip()).rstrip(".")
    if not _REFERENCE_RE.match(ref):
        return None
    return ".".join(str(int(p)) for p in ref.split("."))


def _natural_key(s: str) -> Tuple:
    return tuple(int(p) if p.isdigit() else p for p in re.split(r"(\d+)", s))


class _FieldIndex:
    """Inverted index of one text field for BM25."""

    def __init__(self, docs: Sequence[List[str]]):
        self.postings: Dict[str, Dict[int, int]] = defaultdict(dict)
        self.lengths = [len(toks) for toks in docs]
        self.avg_len = (sum(self.lengths) / len(self.lengths)) if self.lengths else 0.0
        for doc_idx, toks in enumerate(docs):
            for term, tf in Counter(toks).items():
                self.postings[term][doc_idx] = tf

    def score_term(self, term: str, n_docs: int, out: Dict[int, float]):
        posting = self.postings.get(term)
        if not posting:
            return
        df = len(posting)
        idf = math.log(1.0 + (n_docs - df + 0.5) / (df + 0.5))
        avg = self.avg_len or 1.0
        for doc_idx, tf in posting.items():
            norm = 1.0 - BM25_B + BM25_B * self.lengths[doc_idx] / avg
            out[doc_idx] = out.get(doc_idx, 0.0) + idf * tf * (BM25_K1 + 1.0) / (tf + BM25_K1 * norm)


class SearchEngine:
    """
    In-memory index over the decoded corpus. Built once, then read-only:
    safe for any number of concurrent readers.
    """

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self.entries: List[CorpusEntry] = []
        self.index = None
        self._by_id: Dict[str, int] = {}
        self._fields: Dict[str, _FieldIndex] = {}
        self._vocab_by_len: Dict[int, set] = defaultdict(set)
        self._ready = False

    def log(self, msg):
        log_debug(msg)

    # ---------- build ----------

    def build(self, entries: Sequence[CorpusEntry]):
        entries = list(entries)
        dim = self.dimension or (entries[0].dimension if entries else EMBED_DIM)
        for e in entries:
            if e.dimension != dim:
                raise DimensionMismatchError(dim, e.dimension)

        if entries:
            emb = np.stack([e.embedding for e in entries]).astype(np.float32)
            norms = np.linalg.norm(emb, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            emb = np.ascontiguousarray(emb / norms)
        else:
            emb = np.zeros((0, dim), dtype=np.float32)
        index = faiss.IndexFlatIP(dim)
        index.add(emb)

        fields = {}
        vocab_by_len: Dict[int, set] = defaultdict(set)
        for name in TEXT_FIELDS:
            docs = [tokenize(getattr(e, name)) for e in entries]
            fields[name] = _FieldIndex(docs)
            for term in fields[name].postings:
                vocab_by_len[len(term)].add(term)

        self.entries = entries
        self.dimension = dim
        self.index = index
        self._by_id = {e.id: i for i, e in enumerate(entries)}
        self._fields = fields
        self._vocab_by_len = vocab_by_len
        self._ready = True
        self.log(f"✅ Search index built: {len(entries)} entries | dim {dim} | vocab {sum(len(v) for v in vocab_by_len.values())}")

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _ensure_ready(self):
        if not self._ready:
            raise NotReadyError("search engine queried before build()")

    def get_document_count(self) -> int:
        return len(self.entries)

    def get(self, entry_id: str) -> Optional[CorpusEntry]:
        self._ensure_ready()
        idx = self._by_id.get(entry_id)
        return self.entries[idx] if idx is not None else None

    def _query_vector(self, query_embedding) -> np.ndarray:
        q = np.asarray(query_embedding, dtype=np.float32).reshape(-1)
        if q.shape[0] != self.dimension:
            raise DimensionMismatchError(self.dimension, q.shape[0])
        norm = float(np.linalg.norm(q))
        if norm > 0:
            q = q / norm
        return q.reshape(1, -1)

    # ---------- query modes ----------

    def vector_search(self, query_embedding, limit: int = 5, min_score: float = 0.0) -> List[RetrievedItem]:
        self._ensure_ready()
        q = self._query_vector(query_embedding)
        k = min(int(limit), len(self.entries))
        if k <= 0:
            return []
        scores, idxs = self.index.search(q, k)
        results = []
        for sim, i in zip(scores[0], idxs[0]):
            if i < 0 or sim < min_score:
                continue
            results.append(RetrievedItem(entry=self.entries[i], score=float(sim)))
        self.log(f"🧠 Vector search: {len(results)} hits (limit {limit}, min {min_score})")
        return results

    def _expand_term(self, term: str, tolerance: int) -> List[str]:
        if tolerance <= 0 or len(term) < 3:
            return [term]
        out = []
        for n in range(len(term) - tolerance, len(term) + tolerance + 1):
            for cand in self._vocab_by_len.get(n, ()):
                if within_edit_distance(term, cand, tolerance):
                    out.append(cand)
        return out

    def text_search(self, query_text: str, limit: int = 10, tolerance: int = 1) -> List[RetrievedItem]:
        self._ensure_ready()
        terms = list(dict.fromkeys(tokenize(query_text)))
        if not terms or limit <= 0:
            return []
        n_docs = len(self.entries)
        totals: Dict[int, float] = {}
        for term in terms:
            for variant in self._expand_term(term, tolerance):
                for field in self._fields.values():
                    field.score_term(variant, n_docs, totals)
        ranked = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        results = [RetrievedItem(entry=self.entries[i], score=float(s)) for i, s in ranked]
        self.log(f"📝 Text search '{query_text}': {len(results)} hits")
        return results

    def reference_search(self, reference: str, limit: int = 50) -> List[RetrievedItem]:
        """
        All entries whose reference equals R or starts with 'R.'; ordered by
        entry id. Explicit locators bypass scoring: every hit scores 1.0.
        A verse locator (M.H.V) returns that verse only, not its whole hymn.
        """
        self._ensure_ready()
        ref = parse_reference(reference)
        if ref is None:
            self.log(f"⚠️ Not a verse reference: '{reference}'")
            return []
        prefix = ref + "."
        hits = [e for e in self.entries if e.reference == ref or e.reference.startswith(prefix)]
        hits.sort(key=lambda e: _natural_key(e.id))
        results = [RetrievedItem(entry=e, score=1.0, from_reference=True) for e in hits[:max(0, limit)]]
        self.log(f"🎯 Reference search '{ref}': {len(results)} hits")
        return results

    def hybrid_search(self, query_text: str, query_embedding, limit: int = 5,
                      vector_weight: float = 0.7, text_weight: float = 0.3,
                      min_score: float = -1.0) -> List[RetrievedItem]:
        self._ensure_ready()
        pool = 3 * limit
        vec = self.vector_search(query_embedding, pool, min_score)
        txt = self.text_search(query_text, pool)

        vec_norm = min_max_normalize({it.entry_id: it.score for it in vec})
        txt_norm = min_max_normalize({it.entry_id: it.score for it in txt})

        # vector hits first so equal fused scores keep vector order (stable sort)
        entries: Dict[str, CorpusEntry] = {}
        for it in vec + txt:
            entries.setdefault(it.entry_id, it.entry)
        fused = []
        for entry_id, entry in entries.items():
            score = 0.0
            if entry_id in vec_norm:
                score += vector_weight * vec_norm[entry_id]
            if entry_id in txt_norm:
                score += text_weight * txt_norm[entry_id]
            fused.append(RetrievedItem(entry=entry, score=score))
        fused.sort(key=lambda it: -it.score)
        results = fused[:limit]
        self.log(f"🔀 Hybrid search: {len(vec)} vector + {len(txt)} text → {len(results)} fused")
        return results

    # ---------- stats ----------

    def get_mandala_distribution(self) -> Dict[str, int]:
        counts = Counter()
        for e in self.entries:
            head = e.reference.split(".", 1)[0] if e.reference else ""
            counts[head or "unknown"] += 1
        return dict(sorted(counts.items(), key=lambda kv: kv[1], reverse=True))
