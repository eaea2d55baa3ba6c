"""Data ingestion for detection_training."""

from detection_training.data.iterator import (
    DataIterator,
    RawDataSource,
    SkippableDataSource,
)
from detection_training.data.source import JsonlAnnotationSource

__all__ = [
    "DataIterator",
    "JsonlAnnotationSource",
    "RawDataSource",
    "SkippableDataSource",
]
