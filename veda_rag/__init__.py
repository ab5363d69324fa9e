from .models import CorpusEntry, RetrievedItem, PipelineState, ProgressEvent
from .search_engine import SearchEngine
from .search_agent import SearchAgent
from .relevance_agent import RelevanceAgent
from .translation_agent import TranslationAgent
from .synthesis_agent import SynthesisAgent
from .pipeline import AnswerStream, Pipeline
from .retriever import VedaServices

__all__ = [
    "CorpusEntry",
    "RetrievedItem",
    "PipelineState",
    "ProgressEvent",
    "SearchEngine",
    "SearchAgent",
    "RelevanceAgent",
    "TranslationAgent",
    "SynthesisAgent",
    "AnswerStream",
    "Pipeline",
    "VedaServices",
]
