"""Single-scale grid detector (YOLO-style encoding on one feature map)."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import torch
import torch.nn.functional as F
from torch import nn

from detection_training.config import ModelConfig
from detection_training.models.torch_model import TorchDetectionModel
from detection_training.transforms.augmenter import ImageAugmenter
from detection_training.types import EncodedInputBatch, ImageAnnotation, InputBatch
from detection_training.utils.hydra import register

# objectness, center x, center y, width, height
NUM_BOX_CHANNELS = 5


class GridLabelEncoder:
    """Encode annotations onto an ``output_height x output_width`` grid.

    Each annotation is assigned to the cell containing its box center.  The
    cell's target vector is ``[1, cx, cy, w, h, one_hot(class)]`` where
    ``cx``/``cy`` are the center offsets within the cell in ``[0, 1)`` and
    ``w``/``h`` are normalized to the image.  When two boxes share a cell the
    later one wins.
    """

    def __init__(self, output_height: int, output_width: int, num_classes: int) -> None:
        self.output_height = output_height
        self.output_width = output_width
        self.num_classes = num_classes

    @property
    def channels(self) -> int:
        return NUM_BOX_CHANNELS + self.num_classes

    def encode_image(self, annotations: Sequence[ImageAnnotation]) -> torch.Tensor:
        """Return a (H, W, 5 + num_classes) target for one image."""
        h, w = self.output_height, self.output_width
        target = torch.zeros(h, w, self.channels)
        for ann in annotations:
            if ann.class_id >= self.num_classes:
                raise ValueError(
                    f"class_id {ann.class_id} out of range for "
                    f"{self.num_classes} classes"
                )
            cx = min(max(ann.x + ann.width / 2, 0.0), 1.0) * w
            cy = min(max(ann.y + ann.height / 2, 0.0), 1.0) * h
            col = min(int(cx), w - 1)
            row = min(int(cy), h - 1)
            cell = target[row, col]
            cell.zero_()
            cell[0] = 1.0
            cell[1] = cx - col
            cell[2] = cy - row
            cell[3] = ann.width
            cell[4] = ann.height
            cell[NUM_BOX_CHANNELS + ann.class_id] = 1.0
        return target

    def __call__(
        self, annotations: Sequence[Sequence[ImageAnnotation]]
    ) -> torch.Tensor:
        """Return a (N, H, W, 5 + num_classes) target for a batch."""
        if not annotations:
            return torch.zeros(0, self.output_height, self.output_width, self.channels)
        return torch.stack([self.encode_image(anns) for anns in annotations])


class GridDetectionNetwork(nn.Module):
    """Small strided conv backbone pooled to the output grid.

    Input is (N, H, W, C) as produced by the augmenter; output is
    (N, output_height, output_width, 5 + num_classes) raw logits.
    """

    def __init__(
        self,
        num_classes: int,
        output_height: int = 13,
        output_width: int = 13,
        in_channels: int = 3,
        width: int = 16,
    ) -> None:
        super().__init__()
        self.backbone = nn.Sequential(
            nn.Conv2d(in_channels, width, kernel_size=3, stride=2, padding=1),
            nn.LeakyReLU(0.1),
            nn.Conv2d(width, width * 2, kernel_size=3, stride=2, padding=1),
            nn.LeakyReLU(0.1),
            nn.Conv2d(width * 2, width * 4, kernel_size=3, stride=2, padding=1),
            nn.LeakyReLU(0.1),
            nn.AdaptiveAvgPool2d((output_height, output_width)),
        )
        self.head = nn.Conv2d(width * 4, NUM_BOX_CHANNELS + num_classes, kernel_size=1)

    def forward(self, images: torch.Tensor) -> torch.Tensor:
        features = self.backbone(images.permute(0, 3, 1, 2))
        return self.head(features).permute(0, 2, 3, 1)


def grid_detection_loss(
    predictions: torch.Tensor, labels: torch.Tensor, coord_weight: float = 5.0
) -> torch.Tensor:
    """Per-image detection loss for grid predictions.

    Objectness BCE over every cell; box MSE (on sigmoid outputs) and class
    BCE only on cells that contain an object.

    Returns:
        Tensor of shape (N,).
    """
    obj_target = labels[..., 0]
    obj_loss = F.binary_cross_entropy_with_logits(
        predictions[..., 0], obj_target, reduction="none"
    )
    box_pred = torch.sigmoid(predictions[..., 1:NUM_BOX_CHANNELS])
    box_loss = ((box_pred - labels[..., 1:NUM_BOX_CHANNELS]) ** 2).sum(-1)
    cls_loss = F.binary_cross_entropy_with_logits(
        predictions[..., NUM_BOX_CHANNELS:],
        labels[..., NUM_BOX_CHANNELS:],
        reduction="none",
    ).sum(-1)
    per_cell = obj_loss + obj_target * (coord_weight * box_loss + cls_loss)
    return per_cell.flatten(1).sum(1)


@register(group="model", name="grid", learning_rate=1e-3, momentum=0.9, width=16)
class GridDetectionModel(TorchDetectionModel):
    """Grid detector trained end to end with SGD.

    Pass ``network`` to train a custom module producing the same output
    layout; otherwise a :class:`GridDetectionNetwork` of the given ``width``
    is built from ``config``.
    """

    def __init__(
        self,
        config: ModelConfig,
        augmenter: ImageAugmenter,
        network: nn.Module | None = None,
        width: int = 16,
        coord_weight: float = 5.0,
        **kwargs: Any,
    ) -> None:
        config.require_trainable()
        if network is None:
            network = GridDetectionNetwork(
                num_classes=config.num_classes,
                output_height=config.output_height,
                output_width=config.output_width,
                width=width,
            )
        super().__init__(config, augmenter, network, **kwargs)
        self.coord_weight = coord_weight
        self.encoder = GridLabelEncoder(
            config.output_height, config.output_width, config.num_classes
        )

    def encode(self, batch: InputBatch) -> EncodedInputBatch:
        return EncodedInputBatch(
            iteration_id=batch.iteration_id,
            images=batch.images,
            labels=self.encoder(batch.annotations),
            annotations=batch.annotations,
        )

    def compute_loss(
        self, predictions: torch.Tensor, labels: torch.Tensor
    ) -> torch.Tensor:
        return grid_detection_loss(predictions, labels, self.coord_weight)
