"""Adapter turning a raw data source into a stream of DataBatch values."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from loguru import logger

from detection_training.errors import DataSourceError, IteratorExhaustedError
from detection_training.streams import BatchIterator
from detection_training.types import DataBatch, LabeledImage


@runtime_checkable
class RawDataSource(Protocol):
    """Contract for anything that can produce batches of annotated images."""

    def has_next_batch(self) -> bool:
        """Whether at least one more image can be produced."""
        ...

    def next_batch(self, batch_size: int) -> Sequence[LabeledImage]:
        """Return up to ``batch_size`` annotated images."""
        ...


@runtime_checkable
class SkippableDataSource(RawDataSource, Protocol):
    """A source that can discard a batch without producing its images."""

    def skip_batch(self, batch_size: int) -> int:
        """Advance past up to ``batch_size`` images; return how many."""
        ...


class DataIterator(BatchIterator[DataBatch]):
    """Wraps a :class:`RawDataSource` and stamps iteration ids.

    Args:
        source: The raw data source to read from.
        batch_size: Number of images to request per batch.
        offset: Number of batches already consumed by an earlier run.  The
            first batch produced has ``iteration_id == offset + 1``.  Before
            that, ``offset`` batches are drawn from ``source`` and discarded
            so a fresh, deterministic source resumes where the ids say it is.
            Sources implementing :class:`SkippableDataSource` skip without
            decoding images.
    """

    def __init__(
        self, source: RawDataSource, batch_size: int, offset: int = 0
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if offset < 0:
            raise ValueError(f"offset must be non-negative, got {offset}")
        self._source = source
        self._batch_size = batch_size
        self._offset = offset
        self._last_iteration_id = offset
        self._skipped = offset == 0

    @property
    def last_iteration_id(self) -> int:
        return self._last_iteration_id

    def _skip_offset(self) -> None:
        discard: Callable[[int], object]
        if isinstance(self._source, SkippableDataSource):
            discard = self._source.skip_batch
        else:
            discard = self._source.next_batch
        skipped = 0
        while skipped < self._offset and self._source.has_next_batch():
            discard(self._batch_size)
            skipped += 1
        self._skipped = True
        if skipped:
            logger.debug(f"Skipped {skipped} batch(es) to resume at offset {self._offset}")

    def has_next(self) -> bool:
        if not self._skipped:
            self._skip_offset()
        return self._source.has_next_batch()

    def next(self) -> DataBatch:
        if not self.has_next():
            raise IteratorExhaustedError(
                f"next() called after the last batch "
                f"(last iteration_id={self._last_iteration_id})"
            )
        examples = tuple(self._source.next_batch(self._batch_size))
        if not examples:
            raise DataSourceError(
                "data source reported more batches but returned none"
            )
        self._last_iteration_id += 1
        return DataBatch(iteration_id=self._last_iteration_id, examples=examples)
