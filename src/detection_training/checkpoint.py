"""Checkpoint writer/reader: orjson config sidecar plus torch weights file."""

from __future__ import annotations

from pathlib import Path

import orjson
import torch
from loguru import logger

from detection_training.config import ModelConfig
from detection_training.types import Checkpoint

CONFIG_FILENAME = "config.json"
WEIGHTS_FILENAME = "weights.pt"


def checkpoint_dir_name(iteration_id: int) -> str:
    return f"iteration_{iteration_id:06d}"


def save_checkpoint(checkpoint: Checkpoint, directory: Path) -> Path:
    """Write ``checkpoint`` into ``directory`` and return the directory.

    ``config.json`` holds the model config and iteration id; ``weights.pt``
    holds the weight mapping.
    """
    directory.mkdir(parents=True, exist_ok=True)
    meta = {
        "config": checkpoint.config.model_dump(),
        "iteration_id": checkpoint.iteration_id,
    }
    (directory / CONFIG_FILENAME).write_bytes(
        orjson.dumps(meta, option=orjson.OPT_INDENT_2)
    )
    torch.save(checkpoint.weights, directory / WEIGHTS_FILENAME)
    logger.info(
        f"Checkpoint for iteration {checkpoint.iteration_id} saved to {directory}"
    )
    return directory


def load_checkpoint(directory: Path) -> Checkpoint:
    """Read a checkpoint written by :func:`save_checkpoint`."""
    meta = orjson.loads((directory / CONFIG_FILENAME).read_bytes())
    weights = torch.load(
        directory / WEIGHTS_FILENAME, map_location="cpu", weights_only=True
    )
    return Checkpoint(
        config=ModelConfig(**meta["config"]),
        weights=weights,
        iteration_id=meta["iteration_id"],
    )
