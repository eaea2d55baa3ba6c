"""Shared pytest fixtures for detection_training tests."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
import torch
from PIL import Image

from detection_training.config import ModelConfig
from detection_training.transforms.augmenter import TorchvisionAugmenter
from detection_training.types import ImageAnnotation, LabeledImage

IMAGE_SIZE = 32
GRID_SIZE = 4
NUM_CLASSES = 2


class ListSource:
    """In-memory raw data source serving ``examples`` in order, once."""

    def __init__(self, examples: Sequence[LabeledImage]) -> None:
        self.examples = list(examples)
        self.cursor = 0
        self.requests: list[int] = []

    def has_next_batch(self) -> bool:
        return self.cursor < len(self.examples)

    def next_batch(self, batch_size: int) -> list[LabeledImage]:
        self.requests.append(batch_size)
        batch = self.examples[self.cursor : self.cursor + batch_size]
        self.cursor += len(batch)
        return batch


def make_example(seed: int, num_boxes: int = 1) -> LabeledImage:
    """Deterministic CHW image with ``num_boxes`` annotations."""
    generator = torch.Generator().manual_seed(seed)
    image = torch.rand(3, IMAGE_SIZE, IMAGE_SIZE, generator=generator)
    annotations = tuple(
        ImageAnnotation(
            class_id=(seed + i) % NUM_CLASSES,
            x=0.1 + 0.2 * i,
            y=0.2,
            width=0.25,
            height=0.3,
        )
        for i in range(num_boxes)
    )
    return LabeledImage(image=image, annotations=annotations)


@pytest.fixture()
def make_source() -> Callable[[int], ListSource]:
    """Factory for fresh, identical in-memory sources of ``n`` images."""

    def _make(n: int) -> ListSource:
        return ListSource([make_example(i) for i in range(n)])

    return _make


@pytest.fixture()
def model_config() -> ModelConfig:
    return ModelConfig(
        batch_size=2,
        num_classes=NUM_CLASSES,
        output_height=GRID_SIZE,
        output_width=GRID_SIZE,
    )


@pytest.fixture()
def augmenter() -> TorchvisionAugmenter:
    """Deterministic augmenter (no flips) producing IMAGE_SIZE squares."""
    return TorchvisionAugmenter(output_height=IMAGE_SIZE, output_width=IMAGE_SIZE)


@pytest.fixture()
def tmp_dataset_dir(tmp_path: Path) -> Path:
    """Minimal JSONL-annotated detection dataset.

    5 images in two subdirectories, labels "circle" and "square".
    Image sizes differ so box normalization can be checked.
    """
    layout = {
        "real": [("a.png", 100, 50), ("b.png", 100, 50), ("c.png", 64, 64)],
        "synthetic": [("d.png", 64, 64), ("e.png", 80, 40)],
    }
    for subdir, images in layout.items():
        split_dir = tmp_path / subdir
        split_dir.mkdir()
        lines: list[str] = []
        for i, (fname, w, h) in enumerate(images):
            Image.new("RGB", (w, h), color=(40 * i, 100, 150)).save(split_dir / fname)
            label = "circle" if i % 2 == 0 else "square"
            lines.append(
                json.dumps(
                    {
                        "image": fname,
                        "annotations": [
                            {"label": label, "x": 10, "y": 5, "width": 20, "height": 10}
                        ],
                    }
                )
            )
        (split_dir / "annotations.jsonl").write_text("\n".join(lines) + "\n")
    return tmp_path
