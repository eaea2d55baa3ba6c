"""Drive one training session: stream batches, report progress, checkpoint."""

from __future__ import annotations

import threading
from pathlib import Path

from loguru import logger

from detection_training.checkpoint import checkpoint_dir_name, save_checkpoint
from detection_training.config import SessionConfig
from detection_training.data.iterator import RawDataSource
from detection_training.models.base import ObjectDetectionModel
from detection_training.progress import ProgressUpdater
from detection_training.types import Checkpoint, TrainingProgress


class TrainingSession:
    """Runs a model's training stream to completion.

    Stops when the source is exhausted, when ``max_iterations`` of the
    model config is reached, or when :meth:`stop` is called.  Stopping always
    happens between batches: the batch in flight finishes its optimizer step
    before the stream is cancelled.

    Any failure is logged and re-raised.  Steps completed before it are
    kept in a final checkpoint.

    Args:
        model: Model providing the training and checkpoint streams.
        source: Raw data source to train on.
        config: Session settings (smoothing, logging, checkpointing).
        offset: Number of iterations completed by an earlier run.
        smoothed_loss: Smoothed loss reached by that earlier run, if known.
    """

    def __init__(
        self,
        model: ObjectDetectionModel,
        source: RawDataSource,
        config: SessionConfig | None = None,
        offset: int = 0,
        smoothed_loss: float | None = None,
    ) -> None:
        self.model = model
        self.source = source
        self.config = config or SessionConfig()
        self.offset = offset
        self.history: list[TrainingProgress] = []
        self._progress = ProgressUpdater(
            self.config.smoothing_factor,
            smoothed_loss=smoothed_loss,
            last_iteration_id=offset,
        )
        self._stop_requested = threading.Event()
        self._last_saved_iteration = -1

    def stop(self) -> None:
        """Ask the session to stop after the current batch."""
        self._stop_requested.set()

    def _save(self, checkpoint: Checkpoint) -> None:
        if checkpoint.iteration_id == self._last_saved_iteration:
            return
        directory = Path(self.config.checkpoint_dir) / checkpoint_dir_name(
            checkpoint.iteration_id
        )
        save_checkpoint(checkpoint, directory)
        self._last_saved_iteration = checkpoint.iteration_id

    def _save_after_failure(self, checkpoint: Checkpoint | None) -> None:
        # Keep the steps that completed before the failure.
        if checkpoint is None or checkpoint.iteration_id <= self.offset:
            return
        try:
            self._save(checkpoint)
        except OSError as exc:
            logger.error(f"Could not save checkpoint after failure: {exc}")

    def run(self) -> TrainingProgress | None:
        """Train until done and return the last progress update."""
        model_config = self.model.config
        max_iterations = model_config.max_iterations
        if max_iterations != -1 and self.offset >= max_iterations:
            logger.info(
                f"Nothing to do: offset {self.offset} >= max_iterations {max_iterations}"
            )
            return None

        logger.info(
            f"Starting training at iteration {self.offset + 1} "
            f"(batch_size={model_config.batch_size}, max_iterations={max_iterations})"
        )
        outputs = self.model.as_training_batch_publisher(
            self.source, model_config.batch_size, self.offset
        )
        progress_stream = iter(outputs.map(self._progress))
        checkpoints = iter(self.model.as_checkpoint_publisher())
        last: TrainingProgress | None = None
        try:
            for progress in progress_stream:
                last = progress
                self.history.append(progress)
                iteration = progress.iteration_id
                if iteration % self.config.log_interval == 0:
                    logger.info(
                        f"Iteration {iteration}: smoothed_loss={progress.smoothed_loss:.4f}"
                    )
                interval = self.config.checkpoint_interval
                if interval and iteration % interval == 0:
                    self._save(next(checkpoints))
                if max_iterations != -1 and iteration >= max_iterations:
                    break
                if self._stop_requested.is_set():
                    logger.warning(f"Stop requested; ending after iteration {iteration}")
                    break
            if last is not None:
                self._save(next(checkpoints))
        except Exception as exc:
            cause = f" caused by {exc.__cause__!r}" if exc.__cause__ else ""
            logger.error(f"Training failed: {exc}{cause}")
            self._save_after_failure(next(checkpoints, None))
            raise
        finally:
            progress_stream.close()
            checkpoints.close()

        if last is None:
            logger.warning("Training data produced no batches")
        else:
            logger.info(
                f"Finished at iteration {last.iteration_id}: "
                f"smoothed_loss={last.smoothed_loss:.4f}"
            )
        return last
