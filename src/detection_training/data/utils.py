"""Utility functions for the data pipeline."""

from pathlib import Path


def find_annotation_files(root: Path, filename: str = "annotations.jsonl") -> list[Path]:
    """Recursively find annotation files named ``filename`` under root.

    Returns:
        Sorted list of matching file paths, so discovery order is stable.
    """
    return sorted(p for p in root.rglob(filename) if p.is_file())


def normalize_box(
    x: float, y: float, width: float, height: float, image_size: tuple[int, int]
) -> tuple[float, float, float, float]:
    """Convert a pixel-space (x, y, width, height) box to normalized coordinates.

    Args:
        image_size: ``(width, height)`` of the decoded image, as PIL reports it.
    """
    img_w, img_h = image_size
    if img_w <= 0 or img_h <= 0:
        raise ValueError(f"image size must be positive, got {image_size}")
    return x / img_w, y / img_h, width / img_w, height / img_h
