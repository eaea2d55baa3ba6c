"""Exceptions raised by the detection_training pipeline."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


class IteratorExhaustedError(PipelineError):
    """``next()`` was called on an iterator with no remaining batches.

    This is a caller bug and must not be retried.
    """


class DataSourceError(PipelineError):
    """The raw data source failed to produce a batch it claimed to have."""


class BatchOrderError(PipelineError):
    """A stateful stage observed batches out of iteration order."""


class StageError(PipelineError):
    """A pipeline stage failed while processing one batch.

    The underlying exception is chained as ``__cause__``.
    """

    def __init__(self, stage: str, iteration_id: int | None) -> None:
        self.stage = stage
        self.iteration_id = iteration_id
        super().__init__(
            f"Stage {stage!r} failed on iteration {iteration_id}"
        )


class ConfigurationError(ValueError):
    """Configuration is inconsistent with starting training."""
