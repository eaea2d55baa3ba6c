"""Augmentation stage: raw DataBatch to model-agnostic InputBatch."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, TypedDict, runtime_checkable

import torch
from loguru import logger
from torchvision.transforms import v2

from detection_training.streams import Transform
from detection_training.transforms.conversion import (
    annotations_to_boxes,
    boxes_to_annotations,
    image_hw,
)
from detection_training.types import (
    DataBatch,
    ImageAnnotation,
    InputBatch,
    LabeledImage,
)
from detection_training.utils.hydra import register


class AugmentedImages(TypedDict):
    """Output of an augmentation engine for one batch.

    images: Float tensor of shape (N, H, W, C) with values in ``[0, 1]``.
    annotations: Normalized annotations, one tuple per image.
    """

    images: torch.Tensor
    annotations: tuple[tuple[ImageAnnotation, ...], ...]


@runtime_checkable
class ImageAugmenter(Protocol):
    """Contract for augmentation/resizing engines."""

    def augment(self, examples: Sequence[LabeledImage]) -> AugmentedImages: ...


@register(group="augmenter", name="torchvision")
class TorchvisionAugmenter:
    """Resize (and optionally flip) images together with their boxes.

    Uses torchvision v2 transforms so that ``BoundingBoxes`` follow every
    geometric change applied to the image.

    Args:
        output_height: Height of every output image.
        output_width: Width of every output image.
        horizontal_flip_prob: Probability of mirroring each image.  ``0``
            gives a deterministic augmenter.
    """

    def __init__(
        self,
        output_height: int = 416,
        output_width: int = 416,
        horizontal_flip_prob: float = 0.0,
    ) -> None:
        self.output_height = output_height
        self.output_width = output_width
        steps: list[v2.Transform] = []
        if horizontal_flip_prob > 0:
            steps.append(v2.RandomHorizontalFlip(p=horizontal_flip_prob))
        steps += [
            v2.Resize((output_height, output_width), antialias=True),
            v2.ClampBoundingBoxes(),
            v2.ToImage(),
            v2.ToDtype(torch.float32, scale=True),
        ]
        self._pipeline = v2.Compose(steps)

    def augment(self, examples: Sequence[LabeledImage]) -> AugmentedImages:
        images: list[torch.Tensor] = []
        annotations: list[tuple[ImageAnnotation, ...]] = []
        for example in examples:
            image, anns = self._augment_one(example)
            images.append(image)
            annotations.append(anns)
        return {
            "images": torch.stack(images),
            "annotations": tuple(annotations),
        }

    def _augment_one(
        self, example: LabeledImage
    ) -> tuple[torch.Tensor, tuple[ImageAnnotation, ...]]:
        boxes = annotations_to_boxes(example.annotations, image_hw(example.image))
        image, out_boxes = self._pipeline(example.image, boxes)
        anns = boxes_to_annotations(out_boxes, example.annotations)
        # Float resampling of tensor inputs can land just outside [0, 1].
        image = image.clamp(0.0, 1.0)
        # CHW -> HWC
        return image.permute(1, 2, 0).contiguous(), anns


class DataAugmenter(Transform[DataBatch, InputBatch]):
    """Pipeline stage delegating each batch to an :class:`ImageAugmenter`.

    Engine errors are not caught here; the stream wiring turns them into a
    terminal failure of the whole pipeline.
    """

    def __init__(self, engine: ImageAugmenter) -> None:
        self.engine = engine

    def invoke(self, item: DataBatch) -> InputBatch:
        result = self.engine.augment(item.examples)
        logger.debug(
            f"Augmented iteration {item.iteration_id}: "
            f"images {tuple(result['images'].shape)}"
        )
        return InputBatch(
            iteration_id=item.iteration_id,
            images=result["images"],
            annotations=result["annotations"],
        )
