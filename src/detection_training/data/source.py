"""JSONL-annotated image directory as a raw data source."""

from __future__ import annotations

import json
from pathlib import Path

import torch
from loguru import logger
from PIL import Image

from detection_training.data.utils import find_annotation_files, normalize_box
from detection_training.errors import IteratorExhaustedError
from detection_training.types import ImageAnnotation, LabeledImage

# (class_id, x, y, width, height) in pixels
_PixelBox = tuple[int, float, float, float, float]


class JsonlAnnotationSource:
    """Raw data source reading images described by ``annotations.jsonl`` files.

    Recursively discovers every ``annotations.jsonl`` under ``root``.  Each
    line describes one image::

        {"image": "img_000.jpg",
         "annotations": [{"label": "cat", "x": 10, "y": 20,
                          "width": 64, "height": 48}]}

    Image paths are resolved relative to the annotation file's directory and
    box coordinates are pixels with a top-left origin.  Boxes are normalized
    by the decoded image size when the image is loaded.

    Args:
        root: Directory to search recursively for annotation files.
        class_to_idx: Mapping from label to class id.  When ``None`` it is
            built from every label found, sorted alphabetically.  Labels
            missing from a provided mapping are skipped.
        shuffle: Visit images in a random order, reshuffled every epoch.
        repeat: Cycle through the data forever instead of stopping after one
            epoch.  Batches are filled across epoch boundaries.
        seed: Seed for the shuffle order.  The order of epoch ``e`` depends
            only on ``seed + e``.
    """

    def __init__(
        self,
        root: Path | str,
        class_to_idx: dict[str, int] | None = None,
        *,
        shuffle: bool = False,
        repeat: bool = False,
        seed: int = 0,
    ) -> None:
        self.root = Path(root)
        self.shuffle = shuffle
        self.repeat = repeat
        self.seed = seed

        rows = self._read_rows()
        if class_to_idx is None:
            labels = {ann["label"] for _, anns in rows for ann in anns}
            class_to_idx = {label: i for i, label in enumerate(sorted(labels))}
        self.class_to_idx = class_to_idx

        self.samples: list[tuple[Path, tuple[_PixelBox, ...]]] = []
        skipped = 0
        for img_path, anns in rows:
            boxes: list[_PixelBox] = []
            for ann in anns:
                if ann["label"] not in class_to_idx:
                    skipped += 1
                    continue
                boxes.append(
                    (
                        class_to_idx[ann["label"]],
                        float(ann["x"]),
                        float(ann["y"]),
                        float(ann["width"]),
                        float(ann["height"]),
                    )
                )
            self.samples.append((img_path, tuple(boxes)))
        if skipped:
            logger.warning(
                f"Skipped {skipped} annotation(s) with unknown labels under {self.root}"
            )
        logger.debug(
            f"JsonlAnnotationSource: {len(self.samples)} images, "
            f"{len(class_to_idx)} classes under {self.root}"
        )

        self._epoch = -1
        self._order: list[int] = []
        self._cursor = 0
        self._start_epoch()

    def _read_rows(self) -> list[tuple[Path, list[dict[str, object]]]]:
        rows: list[tuple[Path, list[dict[str, object]]]] = []
        for ann_path in find_annotation_files(self.root):
            with open(ann_path) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    record = json.loads(line)
                    rows.append(
                        (ann_path.parent / record["image"], record.get("annotations", []))
                    )
        return rows

    def _start_epoch(self) -> None:
        self._epoch += 1
        self._cursor = 0
        n = len(self.samples)
        if self.shuffle:
            generator = torch.Generator().manual_seed(self.seed + self._epoch)
            self._order = torch.randperm(n, generator=generator).tolist()
        else:
            self._order = list(range(n))

    @property
    def num_instances(self) -> int:
        return len(self.samples)

    @property
    def num_classes(self) -> int:
        return len(self.class_to_idx)

    def __len__(self) -> int:
        return len(self.samples)

    def has_next_batch(self) -> bool:
        if not self.samples:
            return False
        return self.repeat or self._cursor < len(self._order)

    def _advance(self, batch_size: int) -> list[int]:
        """Move the cursor past the next batch and return its sample indices."""
        if not self.has_next_batch():
            raise IteratorExhaustedError(f"no images left under {self.root}")
        indices: list[int] = []
        while len(indices) < batch_size:
            if self._cursor >= len(self._order):
                if not self.repeat:
                    break
                self._start_epoch()
            indices.append(self._order[self._cursor])
            self._cursor += 1
        return indices

    def next_batch(self, batch_size: int) -> list[LabeledImage]:
        return [self._load(idx) for idx in self._advance(batch_size)]

    def skip_batch(self, batch_size: int) -> int:
        """Consume the next batch without decoding any image.

        Leaves the source in the same state as :meth:`next_batch` would and
        returns the number of images skipped.
        """
        return len(self._advance(batch_size))

    def _load(self, idx: int) -> LabeledImage:
        img_path, boxes = self.samples[idx]
        img = Image.open(img_path).convert("RGB")
        annotations = []
        for class_id, x, y, w, h in boxes:
            nx, ny, nw, nh = normalize_box(x, y, w, h, img.size)
            annotations.append(
                ImageAnnotation(class_id=class_id, x=nx, y=ny, width=nw, height=nh)
            )
        return LabeledImage(image=img, annotations=tuple(annotations))
