# veda_rag/glossary.py — RigVeda vocabulary, named-hymn aliases, fallback terms
import re
from typing import Iterable, List, Optional

# ==== Script helpers ====
_DEVANAGARI_RE = re.compile(r"[ऀ-ॿ]")
_DEVANAGARI_DIGITS = str.maketrans("०१२३४५६७८९", "0123456789")


def normalize_digits(text: str) -> str:
    return (text or "").translate(_DEVANAGARI_DIGITS)


def has_devanagari(text: str) -> bool:
    return bool(_DEVANAGARI_RE.search(text or ""))


def sanitize_unicode(text: str) -> str:
    """Drop Devanagari runs glued to '?' garbage from broken decoding; collapse whitespace."""
    if not text:
        return ""
    t = re.sub(r"[ऀ-ॿ]+\?+", "", text)
    t = re.sub(r"\?+[ऀ-ॿ]+", "", t)
    t = t.strip().strip("\"'`")
    return re.sub(r"\s+", " ", t).strip()


# ==== Named works → reference ====
WORK_ALIASES = {
    "10.129": [r"n[aā]sad[iī]ya", r"creation\s+hymn", r"नासदीय"],
    "10.90":  [r"purusha\s+s[uū]kta", r"\bpurusha\b", r"पुरुष\s*सूक्त"],
    "3.62.10": [r"g[aā]yatr[iī]", r"गायत्री"],
}

_DOTTED_RE = re.compile(r"(?<![\d.])\d{1,3}(?:\.\d{1,3}){1,2}(?![\d])")
_MANDALA_RE = re.compile(
    r"\bmandala\s+(\d{1,2})\s*,?\s*(?:sukta|s[uū]kta|hymn)\s+(\d{1,3})(?:\s*,?\s*(?:verse|rik|ṛk)\s+(\d{1,3}))?",
    re.IGNORECASE,
)


def find_references(text: str) -> List[str]:
    """Every verse locator found in free text, in priority order, de-duplicated."""
    t = normalize_digits(text or "")
    found: List[str] = []
    for m in _DOTTED_RE.finditer(t):
        found.append(m.group(0))
    for m in _MANDALA_RE.finditer(t):
        found.append(".".join(g for g in m.groups() if g))
    for ref, patterns in WORK_ALIASES.items():
        if any(re.search(p, t, re.IGNORECASE) for p in patterns):
            found.append(ref)
    return list(dict.fromkeys(found))


# ==== Phrase-generation context ====
CORPUS_GLOSSARY = """RIGVEDA CORPUS KNOWLEDGE:
- 10 Mandalas (books) containing hymns to various deities
- Major deities: Agni (अग्नि - fire), Indra (इन्द्र - thunder), Soma (सोम - sacred plant), Varuna (वरुण - cosmic order), Ushas (उषस् - dawn)
- Key concepts: Rita (ऋत - cosmic order), Yajna (यज्ञ - sacrifice), Brahman (ब्रह्मन्), Atman (आत्मन्)
- Famous hymns: Nasadiya Sukta (नासदीय सूक्त - creation hymn, 10.129), Purusha Sukta (पुरुष सूक्त - cosmic being, 10.90), Gayatri (3.62.10)
- Reference format: Mandala.Hymn.Verse (e.g. 10.129.1)
- Written in Vedic Sanskrit with Devanagari script"""

PHRASE_EXAMPLES = [
    ("सोम पवमान यज्ञ", "Soma purification sacrifice"),
    ("इन्द्र वृत्र युद्ध", "Indra's battle with Vritra"),
    ("अग्नि होत्र देव", "Agni fire offering to gods"),
    ("ऋत सत्य धर्म", "cosmic order, truth, duty"),
    ("नासदीय सृष्टि सूक्त", "Nasadiya creation hymn"),
]

# English cue → corpus vocabulary (first unused match wins)
TERM_MAP = {
    "fire": "अग्नि", "agni": "अग्नि",
    "thunder": "इन्द्र", "indra": "इन्द्र", "storm": "इन्द्र",
    "moon": "सोम", "soma": "सोम",
    "water": "वरुण", "varuna": "वरुण", "ocean": "वरुण",
    "dawn": "उषस्", "ushas": "उषस्", "morning": "उषस्",
    "wind": "वायु", "vayu": "वायु", "air": "वायु",
    "sun": "सूर्य", "surya": "सूर्य", "solar": "सूर्य",
    "order": "ऋत", "rita": "ऋत", "cosmic": "ऋत",
    "sacrifice": "यज्ञ", "yajna": "यज्ञ", "ritual": "यज्ञ",
    "duty": "धर्म", "dharma": "धर्म", "righteousness": "धर्म",
    "creator": "ब्रह्म", "brahma": "ब्रह्म", "supreme": "ब्रह्म",
    "creation": "सृष्टि",
}

COMMON_TERMS = ["अग्नि", "इन्द्र", "सोम", "वरुण", "उषस्", "वायु", "सूर्य", "ऋत", "यज्ञ", "धर्म"]


def fallback_terms(request: str) -> List[str]:
    """Candidate rotation for a request: hymn references, mapped terms, then common terms."""
    q = (request or "").lower()
    out: List[str] = []
    for ref, patterns in WORK_ALIASES.items():
        if any(re.search(p, q, re.IGNORECASE) for p in patterns):
            out.append(ref)
    for cue, term in TERM_MAP.items():
        if re.search(rf"\b{re.escape(cue)}\b", q):
            out.append(term)
    out.extend(COMMON_TERMS)
    return list(dict.fromkeys(out))


def next_fallback_term(request: str, tried: Iterable[str]) -> Optional[str]:
    used = {t.strip() for t in tried}
    for term in fallback_terms(request):
        if term not in used:
            return term
    return None
