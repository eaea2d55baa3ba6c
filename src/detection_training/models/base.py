"""Abstract base for object-detection models."""

from __future__ import annotations

from abc import ABC, abstractmethod

from loguru import logger

from detection_training.config import ModelConfig
from detection_training.data.iterator import DataIterator, RawDataSource
from detection_training.streams import IteratorPublisher, Publisher
from detection_training.transforms.augmenter import DataAugmenter, ImageAugmenter
from detection_training.types import Checkpoint, InputBatch, TrainingOutputBatch


class ObjectDetectionModel(ABC):
    """Builds the model-agnostic part of the training pipeline.

    The chain is ``source -> DataIterator -> DataAugmenter -> <model stage>``.
    Subclasses supply the model stage by implementing
    :meth:`_as_training_batch_publisher` (encode each ``InputBatch`` and run
    one training step on it) and expose checkpoints through
    :meth:`as_checkpoint_publisher`.  All weights and optimizer state live in
    the subclass.

    Raises ``ConfigurationError`` at construction if ``config`` is not ready
    for training, before any batch is read.
    """

    def __init__(self, config: ModelConfig, augmenter: ImageAugmenter) -> None:
        config.require_trainable()
        self.config = config
        self._augmenter = DataAugmenter(augmenter)

    @property
    def augmenter(self) -> DataAugmenter:
        return self._augmenter

    def as_training_batch_publisher(
        self,
        training_data: RawDataSource,
        batch_size: int,
        offset: int = 0,
    ) -> Publisher[TrainingOutputBatch]:
        """Return a stream of training outputs, one per batch of ``training_data``.

        Outputs arrive in order with the ``iteration_id`` of the batch that
        produced them, starting at ``offset + 1``.  The stream completes when
        the source is exhausted and fails if any stage fails.
        """
        logger.debug(
            f"Building training pipeline: batch_size={batch_size}, offset={offset}"
        )
        iterator = DataIterator(training_data, batch_size=batch_size, offset=offset)
        augmented = IteratorPublisher(iterator).map(self._augmenter)
        return self._as_training_batch_publisher(augmented)

    @abstractmethod
    def as_checkpoint_publisher(self) -> Publisher[Checkpoint]:
        """Return a publisher emitting a fresh checkpoint for every request.

        Each checkpoint reflects the most recently completed training step at
        the time it is requested.
        """

    @abstractmethod
    def _as_training_batch_publisher(
        self, augmented_data: Publisher[InputBatch]
    ) -> Publisher[TrainingOutputBatch]:
        """Encode and train on each augmented batch, one output per input."""
