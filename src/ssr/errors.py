from __future__ import annotations


class SSRError(Exception):
    """Base class for errors raised by the retrieval core and its tools."""


class TokenizerUnavailableError(SSRError):
    """The morphological tokenizer is not initialised or its assets are missing."""


class IndexUnavailableError(SSRError):
    """The vector index (collection / namespace store) cannot be reached."""


class GroundTruthError(SSRError):
    """A ground-truth file or labeled CSV failed validation."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []
