"""Object-detection model implementations."""

from detection_training.models.base import ObjectDetectionModel
from detection_training.models.grid import (
    GridDetectionModel,
    GridDetectionNetwork,
    GridLabelEncoder,
    grid_detection_loss,
)
from detection_training.models.torch_model import TorchDetectionModel

__all__ = [
    "GridDetectionModel",
    "GridDetectionNetwork",
    "GridLabelEncoder",
    "ObjectDetectionModel",
    "TorchDetectionModel",
    "grid_detection_loss",
]
