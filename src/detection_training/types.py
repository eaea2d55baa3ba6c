"""Value types passed between stages of the training pipeline.

Every batch type carries ``iteration_id``: a positive integer assigned once
when the raw batch is read (the first batch is 1) and copied unchanged by each
downstream stage, so outputs can be matched back to their inputs.
"""

from __future__ import annotations

import torch
from PIL import Image
from pydantic import BaseModel, Field, model_validator

from detection_training.config import ModelConfig


class ImageAnnotation(BaseModel, frozen=True):
    """One labelled bounding box.

    Coordinates are normalized to the image size, with ``(x, y)`` the
    top-left corner.
    """

    class_id: int = Field(ge=0)
    x: float
    y: float
    width: float = Field(ge=0.0)
    height: float = Field(ge=0.0)
    confidence: float = 1.0


class LabeledImage(BaseModel, frozen=True, arbitrary_types_allowed=True):
    """A decoded image (PIL or CHW tensor) and its annotations."""

    image: Image.Image | torch.Tensor
    annotations: tuple[ImageAnnotation, ...] = ()


class DataBatch(BaseModel, frozen=True, arbitrary_types_allowed=True):
    """Raw annotated images, before augmentation."""

    iteration_id: int = Field(ge=1)
    examples: tuple[LabeledImage, ...] = Field(min_length=1)


class InputBatch(BaseModel, frozen=True, arbitrary_types_allowed=True):
    """Model-agnostic batch after augmentation and resizing.

    images: Float tensor of shape (N, H, W, C), packed row-major.
    annotations: One tuple of annotations per image.
    """

    iteration_id: int = Field(ge=1)
    images: torch.Tensor
    annotations: tuple[tuple[ImageAnnotation, ...], ...]

    @model_validator(mode="after")
    def _batch_dims_agree(self) -> InputBatch:
        if self.images.ndim != 4:
            raise ValueError(
                f"images must be (N, H, W, C), got shape {tuple(self.images.shape)}"
            )
        if self.images.shape[0] != len(self.annotations):
            raise ValueError(
                f"{self.images.shape[0]} images but "
                f"{len(self.annotations)} annotation lists"
            )
        return self


class EncodedInputBatch(BaseModel, frozen=True, arbitrary_types_allowed=True):
    """Batch in a model-specific encoding.

    The raw annotations are retained so predictions can later be evaluated
    against them.
    """

    iteration_id: int = Field(ge=1)
    images: torch.Tensor
    labels: torch.Tensor
    annotations: tuple[tuple[ImageAnnotation, ...], ...]

    @model_validator(mode="after")
    def _batch_dims_agree(self) -> EncodedInputBatch:
        n = len(self.annotations)
        if self.images.shape[0] != n or self.labels.shape[0] != n:
            raise ValueError(
                f"batch dimension mismatch: images={self.images.shape[0]}, "
                f"labels={self.labels.shape[0]}, annotations={n}"
            )
        return self


class TrainingOutputBatch(BaseModel, frozen=True, arbitrary_types_allowed=True):
    """Raw model output for one training step: one loss value per image."""

    iteration_id: int = Field(ge=1)
    loss: torch.Tensor

    @model_validator(mode="after")
    def _loss_has_batch_dim(self) -> TrainingOutputBatch:
        if self.loss.ndim < 1:
            raise ValueError("loss must have a batch dimension")
        return self


class TrainingProgress(BaseModel, frozen=True):
    """User-facing progress for one iteration."""

    iteration_id: int = Field(ge=1)
    smoothed_loss: float


class Checkpoint(BaseModel, frozen=True, arbitrary_types_allowed=True):
    """Everything needed to reconstruct a model.

    Optimizer state (e.g. SGD momentum) is not included, so a resumed run
    restarts its optimizer from scratch.
    """

    config: ModelConfig
    weights: dict[str, torch.Tensor]
    iteration_id: int = Field(default=0, ge=0)
