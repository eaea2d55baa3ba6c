"""Object-detection model trained with a PyTorch network."""

from __future__ import annotations

import threading
from abc import abstractmethod
from typing import Any, TypeVar

import torch
from loguru import logger
from torch import nn

from detection_training.config import ModelConfig
from detection_training.errors import PipelineError
from detection_training.models.base import ObjectDetectionModel
from detection_training.streams import CallablePublisher, FunctionTransform, Publisher
from detection_training.transforms.augmenter import ImageAugmenter
from detection_training.types import (
    Checkpoint,
    EncodedInputBatch,
    InputBatch,
    TrainingOutputBatch,
)

_ModelT = TypeVar("_ModelT", bound="TorchDetectionModel")


class TorchDetectionModel(ObjectDetectionModel):
    """Base for models whose training engine is a ``torch.nn.Module``.

    Subclasses implement :meth:`encode` (InputBatch to model-specific labels)
    and :meth:`compute_loss` (per-image loss).  This class runs the
    forward/backward pass and the SGD update, and serves checkpoints.

    Weight updates and checkpoint snapshots share ``_weights_lock``: a
    checkpoint only waits for an in-progress optimizer update, never for a
    forward/backward pass.  The network must therefore not mutate its own
    state during ``forward`` (no running-statistics buffers).

    Optimizer state is not part of a checkpoint; a model restored with
    :meth:`from_checkpoint` starts with a fresh optimizer.

    Args:
        config: Model configuration; ``num_classes`` must be set.
        augmenter: Augmentation engine owned by this model's pipeline.
        network: The module to train.  Takes (N, H, W, C) images.
        learning_rate: SGD learning rate.
        momentum: SGD momentum.
        weight_decay: SGD weight decay.
        device: Device to train on.
    """

    def __init__(
        self,
        config: ModelConfig,
        augmenter: ImageAugmenter,
        network: nn.Module,
        learning_rate: float = 1e-3,
        momentum: float = 0.9,
        weight_decay: float = 0.0,
        device: str = "cpu",
    ) -> None:
        super().__init__(config, augmenter)
        self.device = torch.device(device)
        self.network = network.to(self.device)
        self.optimizer = torch.optim.SGD(
            self.network.parameters(),
            lr=learning_rate,
            momentum=momentum,
            weight_decay=weight_decay,
        )
        self._weights_lock = threading.Lock()
        self._step_lock = threading.Lock()
        self._last_iteration_id = 0

    @property
    def last_iteration_id(self) -> int:
        """Iteration id of the most recently completed training step."""
        return self._last_iteration_id

    @abstractmethod
    def encode(self, batch: InputBatch) -> EncodedInputBatch:
        """Convert an augmented batch into this model's label encoding."""

    @abstractmethod
    def compute_loss(
        self, predictions: torch.Tensor, labels: torch.Tensor
    ) -> torch.Tensor:
        """Return a loss tensor of shape (N,), one value per image."""

    def train_step(self, batch: EncodedInputBatch) -> TrainingOutputBatch:
        """Run one forward/backward pass and optimizer update."""
        if not self._step_lock.acquire(blocking=False):
            raise PipelineError(
                f"train_step invoked concurrently (iteration {batch.iteration_id})"
            )
        try:
            self.network.train()
            images = batch.images.to(self.device)
            labels = batch.labels.to(self.device)
            predictions = self.network(images)
            loss = self.compute_loss(predictions, labels)
            if loss.shape[0] != images.shape[0]:
                raise PipelineError(
                    f"loss has batch size {loss.shape[0]}, "
                    f"expected {images.shape[0]}"
                )
            self.optimizer.zero_grad()
            loss.mean().backward()
            with self._weights_lock:
                self.optimizer.step()
                self._last_iteration_id = batch.iteration_id
            logger.debug(
                f"Iteration {batch.iteration_id}: loss={loss.mean().item():.4f}"
            )
            return TrainingOutputBatch(
                iteration_id=batch.iteration_id, loss=loss.detach().cpu()
            )
        finally:
            self._step_lock.release()

    def _as_training_batch_publisher(
        self, augmented_data: Publisher[InputBatch]
    ) -> Publisher[TrainingOutputBatch]:
        return augmented_data.map(FunctionTransform(self.encode, "encode")).map(
            FunctionTransform(self.train_step, "train_step")
        )

    def checkpoint(self) -> Checkpoint:
        """Snapshot config and weights as of the last completed step."""
        with self._weights_lock:
            weights = {
                name: tensor.detach().cpu().clone()
                for name, tensor in self.network.state_dict().items()
            }
            iteration_id = self._last_iteration_id
        return Checkpoint(config=self.config, weights=weights, iteration_id=iteration_id)

    def as_checkpoint_publisher(self) -> Publisher[Checkpoint]:
        return CallablePublisher(self.checkpoint)

    def load_weights(self, weights: dict[str, torch.Tensor]) -> None:
        """Replace all network weights.  Missing or unexpected names raise."""
        with self._weights_lock:
            self.network.load_state_dict(weights, strict=True)

    @classmethod
    def from_checkpoint(
        cls: type[_ModelT],
        checkpoint: Checkpoint,
        augmenter: ImageAugmenter,
        **kwargs: Any,
    ) -> _ModelT:
        """Rebuild a model from ``checkpoint``.

        Training continues from ``checkpoint.iteration_id``; pass it as the
        ``offset`` of :meth:`as_training_batch_publisher`.
        """
        model = cls(config=checkpoint.config, augmenter=augmenter, **kwargs)
        model.load_weights(checkpoint.weights)
        model._last_iteration_id = checkpoint.iteration_id
        logger.info(
            f"Restored {cls.__name__} from checkpoint at iteration "
            f"{checkpoint.iteration_id}"
        )
        return model
