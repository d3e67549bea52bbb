"""Error taxonomy for the Folio content pipeline.

Components raise these; ``BookPipeline`` turns them into a failed
``PipelineOutcome`` at its public boundary.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every failure the pipeline reports to callers."""

    category = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        return f"[{self.category}] {self.message}"


class EmptyInput(PipelineError):
    """No usable text after extraction."""

    category = "input"


class ProviderUnavailable(PipelineError):
    """A structuring or embedding provider is unreachable or misconfigured."""

    category = "provider"


class MalformedProviderResponse(PipelineError):
    """An external provider returned data that violates the expected schema."""

    category = "provider"


class DimensionMismatch(PipelineError):
    """Vector shape violation (wrong length for a collection or a batch)."""

    category = "internal"

    def __init__(self, expected: int, actual: int, context: str = "vector"):
        super().__init__(
            f"{context} dimension mismatch. Expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class NotFound(PipelineError):
    """A book, chapter, section or chunk does not exist."""

    category = "not_found"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind.capitalize()} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier
