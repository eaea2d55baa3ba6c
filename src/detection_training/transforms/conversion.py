"""Conversions between pipeline annotations and torchvision tv_tensors."""

from __future__ import annotations

from collections.abc import Sequence

import torch
from PIL import Image
from torchvision import tv_tensors

from detection_training.types import ImageAnnotation


def image_hw(image: Image.Image | torch.Tensor) -> tuple[int, int]:
    """Return ``(height, width)`` of a PIL image or CHW tensor."""
    if isinstance(image, Image.Image):
        width, height = image.size
        return height, width
    return int(image.shape[-2]), int(image.shape[-1])


def annotations_to_boxes(
    annotations: Sequence[ImageAnnotation], canvas_size: tuple[int, int]
) -> tv_tensors.BoundingBoxes:
    """Scale normalized annotations to pixel-space XYWH ``BoundingBoxes``."""
    height, width = canvas_size
    data = torch.tensor(
        [
            [a.x * width, a.y * height, a.width * width, a.height * height]
            for a in annotations
        ],
        dtype=torch.float32,
    ).reshape(-1, 4)
    return tv_tensors.BoundingBoxes(
        data,
        format=tv_tensors.BoundingBoxFormat.XYWH,
        canvas_size=canvas_size,
    )


def boxes_to_annotations(
    boxes: tv_tensors.BoundingBoxes, originals: Sequence[ImageAnnotation]
) -> tuple[ImageAnnotation, ...]:
    """Normalize transformed boxes, keeping class and confidence of ``originals``.

    ``boxes`` must still be in XYWH format and in the same order as
    ``originals``.
    """
    height, width = boxes.canvas_size
    data = boxes.as_subclass(torch.Tensor).tolist()
    return tuple(
        ImageAnnotation(
            class_id=orig.class_id,
            x=x / width,
            y=y / height,
            width=w / width,
            height=h / height,
            confidence=orig.confidence,
        )
        for orig, (x, y, w, h) in zip(originals, data, strict=True)
    )
