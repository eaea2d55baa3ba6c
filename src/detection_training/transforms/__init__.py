"""Augmentation stage for the training pipeline.

Engines follow the :class:`ImageAugmenter` protocol; :class:`DataAugmenter`
adapts an engine to a pipeline stage.
"""

from detection_training.transforms.augmenter import (
    AugmentedImages,
    DataAugmenter,
    ImageAugmenter,
    TorchvisionAugmenter,
)

__all__ = [
    "AugmentedImages",
    "DataAugmenter",
    "ImageAugmenter",
    "TorchvisionAugmenter",
]
