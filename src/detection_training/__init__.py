"""Batch-streaming training pipeline for object-detection models."""

__version__ = "0.0.1"
