# veda_rag/errors.py — error taxonomy shared by the index and the agents


class VedaRagError(Exception):
    """Base class for every error raised by veda_rag."""


class ConfigError(VedaRagError):
    pass


class FormatError(VedaRagError):
    """Binary index is truncated, corrupt or carries trailing bytes."""


class NotReadyError(VedaRagError):
    """Index queried before build()."""


class DimensionMismatchError(VedaRagError):
    def __init__(self, expected: int, got: int):
        super().__init__(f"embedding dimension mismatch: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class LLMError(VedaRagError):
    """Transport or protocol failure of the text-generation endpoint."""


class ClassificationParseError(VedaRagError):
    pass


class PhraseGenerationError(VedaRagError):
    pass


class TranslationError(VedaRagError):
    pass


class RetrievalEmptyError(VedaRagError):
    """No corpus entry matched a query."""
