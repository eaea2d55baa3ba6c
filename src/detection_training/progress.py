"""Reduce raw training output to user-facing progress."""

from __future__ import annotations

from detection_training.errors import BatchOrderError
from detection_training.streams import Transform
from detection_training.types import TrainingOutputBatch, TrainingProgress


class ProgressUpdater(Transform[TrainingOutputBatch, TrainingProgress]):
    """Exponential moving average of per-batch mean loss.

    The first batch initializes the average to its own mean loss; every later
    batch updates it as ``a * loss + (1 - a) * smoothed``.  Because the
    recurrence is order-dependent, batches must arrive with strictly
    increasing ``iteration_id``.

    Args:
        smoothing_factor: Weight ``a`` of the newest batch, in ``(0, 1]``.
        smoothed_loss: Initial average, e.g. when resuming a run.  ``None``
            means no batch has been observed yet.
        last_iteration_id: Last iteration already reflected in
            ``smoothed_loss``.
    """

    def __init__(
        self,
        smoothing_factor: float = 0.1,
        smoothed_loss: float | None = None,
        last_iteration_id: int = 0,
    ) -> None:
        if not 0.0 < smoothing_factor <= 1.0:
            raise ValueError(
                f"smoothing_factor must be in (0, 1], got {smoothing_factor}"
            )
        self.smoothing_factor = smoothing_factor
        self._smoothed_loss = smoothed_loss
        self._last_iteration_id = last_iteration_id

    @property
    def smoothed_loss(self) -> float | None:
        return self._smoothed_loss

    def invoke(self, item: TrainingOutputBatch) -> TrainingProgress:
        if item.iteration_id <= self._last_iteration_id:
            raise BatchOrderError(
                f"iteration {item.iteration_id} arrived after "
                f"{self._last_iteration_id}"
            )
        batch_loss = float(item.loss.detach().float().mean())
        if self._smoothed_loss is None:
            smoothed = batch_loss
        else:
            a = self.smoothing_factor
            smoothed = a * batch_loss + (1.0 - a) * self._smoothed_loss
        self._smoothed_loss = smoothed
        self._last_iteration_id = item.iteration_id
        return TrainingProgress(iteration_id=item.iteration_id, smoothed_loss=smoothed)
