"""
Pipeline error taxonomy.

Data-quality problems are not represented here: they are coerced, counted and
reported, never raised.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures raised by pipeline stages."""


class TransientPipelineError(PipelineError):
    """Infrastructure hiccup worth retrying (timeouts, dropped connections)."""


class SchemaContractError(PipelineError):
    """A file does not honour its contract; skip it and continue with the rest."""

    def __init__(self, message: str, *, blob_path: str | None = None):
        super().__init__(message)
        self.blob_path = blob_path


class InvariantViolation(PipelineError):
    """The warehouse is in a state the pipeline refuses to guess its way through."""


class QueryRejected(PipelineError):
    """A guarded query failed validation and was not executed."""


class StageFailed(PipelineError):
    """Raised by the orchestrator when a stage reports failure."""

    def __init__(self, stage: str, reason: str):
        super().__init__(f"{stage} failed: {reason}")
        self.stage = stage
        self.reason = reason


def truncate_error(exc: BaseException | str, limit: int = 300) -> str:
    """Single-line, length-capped error text for summaries."""

    text = " ".join(str(exc).split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
