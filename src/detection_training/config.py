"""Pydantic frozen configuration models for detection_training."""

from __future__ import annotations

import math

from pydantic import BaseModel, Field, field_validator

from detection_training.errors import ConfigurationError

DEFAULT_BATCH_SIZE = 32
MIN_ITERATIONS = 1000
MAX_ITERATIONS = 10000


def estimate_max_iterations(num_instances: int, batch_size: int) -> int:
    """Heuristic training length for a dataset of ``num_instances`` images.

    Scales with the square root of the dataset size, rounded to the nearest
    thousand and clamped to ``[MIN_ITERATIONS, MAX_ITERATIONS]``.
    """
    if batch_size <= 0:
        raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
    raw = 5000 * math.sqrt(max(num_instances, 0)) / batch_size
    rounded = int(round(raw / 1000.0)) * 1000
    return min(MAX_ITERATIONS, max(MIN_ITERATIONS, rounded))


class ModelConfig(BaseModel, frozen=True):
    """Model-agnostic hyperparameters for object detection.

    ``-1`` for ``max_iterations`` or ``batch_size`` means "compute
    heuristically" (see :meth:`resolve`).  ``num_classes`` must be set before
    a model is constructed.  Output dimensions and class count are fixed for
    the lifetime of a training session.
    """

    max_iterations: int = -1
    batch_size: int = -1
    output_height: int = Field(default=13, gt=0)
    output_width: int = Field(default=13, gt=0)
    num_classes: int = -1

    @field_validator("max_iterations", "batch_size", "num_classes")
    @classmethod
    def _positive_or_unset(cls, value: int) -> int:
        if value != -1 and value <= 0:
            raise ValueError(f"must be positive or -1, got {value}")
        return value

    def require_trainable(self) -> None:
        """Raise ConfigurationError unless training can start with this config."""
        if self.num_classes == -1:
            raise ConfigurationError("num_classes must be set before training")
        if self.batch_size == -1:
            raise ConfigurationError(
                "batch_size must be resolved before training; call resolve()"
            )

    def resolve(
        self, num_instances: int, num_classes: int | None = None
    ) -> ModelConfig:
        """Return a copy with heuristic fields filled in."""
        update: dict[str, int] = {}
        batch_size = self.batch_size
        if batch_size == -1:
            batch_size = DEFAULT_BATCH_SIZE
            update["batch_size"] = batch_size
        if self.max_iterations == -1:
            update["max_iterations"] = estimate_max_iterations(
                num_instances, batch_size
            )
        if self.num_classes == -1 and num_classes is not None:
            update["num_classes"] = num_classes
        # model_copy skips validation, so round-trip through the constructor
        return ModelConfig(**{**self.model_dump(), **update})


class SessionConfig(BaseModel, frozen=True):
    """Settings for a training session that are not part of the model."""

    smoothing_factor: float = Field(default=0.1, gt=0.0, le=1.0)
    log_interval: int = Field(default=10, gt=0)
    checkpoint_interval: int = Field(default=0, ge=0)
    checkpoint_dir: str = "checkpoints"
