"""Training entrypoint for detection_training.

Usage:
    detection-train data.root=/data/shapes                        # defaults
    detection-train data.root=/data/shapes model_config.batch_size=16
    detection-train data.root=/data/shapes augmenter.horizontal_flip_prob=0
    detection-train data.root=/data/shapes resume_from=checkpoints/iteration_001000
"""

import sys
from pathlib import Path
from typing import Any

import hydra
import lightning as L
from loguru import logger
from omegaconf import DictConfig, OmegaConf
from rich import box
from rich.console import Console
from rich.table import Table

# CRITICAL: import models/transforms to trigger @register before Hydra parses config
import detection_training.models  # noqa: F401
import detection_training.transforms  # noqa: F401
from detection_training.checkpoint import load_checkpoint
from detection_training.config import ModelConfig, SessionConfig
from detection_training.data.source import JsonlAnnotationSource
from detection_training.errors import ConfigurationError
from detection_training.models.base import ObjectDetectionModel
from detection_training.session import TrainingSession


def _print_run_table(
    model_config: ModelConfig, session_config: SessionConfig, offset: int
) -> None:
    table = Table(
        title="Training Run",
        header_style="bold magenta",
        box=box.SQUARE,
    )
    table.add_column("Setting", style="cyan")
    table.add_column("Value", justify="right", style="green")
    for key, value in model_config.model_dump().items():
        table.add_row(key, str(value))
    for key, value in session_config.model_dump().items():
        table.add_row(key, str(value))
    table.add_row("start iteration", str(offset + 1))
    Console().print(table)


def _model_kwargs(cfg: DictConfig) -> dict[str, Any]:
    kwargs: dict[str, Any] = OmegaConf.to_container(cfg.model, resolve=True)  # type: ignore[assignment]
    kwargs.pop("_target_", None)
    return kwargs


def build_session(cfg: DictConfig) -> TrainingSession:
    """Build the data source, model, and session described by ``cfg``.

    With ``resume_from`` set, the model is restored from that checkpoint and
    the session continues numbering after its iteration.
    """
    seed = cfg.get("seed", 42)
    source = JsonlAnnotationSource(
        cfg.data.root,
        shuffle=cfg.data.get("shuffle", True),
        repeat=cfg.data.get("repeat", True),
        seed=seed,
    )
    augmenter = hydra.utils.instantiate(cfg.augmenter)
    session_config = SessionConfig(**OmegaConf.to_container(cfg.session, resolve=True))  # type: ignore[arg-type]

    model: ObjectDetectionModel
    offset = 0
    if cfg.get("resume_from"):
        checkpoint = load_checkpoint(Path(cfg.resume_from))
        if checkpoint.config.num_classes != source.num_classes:
            raise ConfigurationError(
                f"checkpoint has {checkpoint.config.num_classes} classes but "
                f"{cfg.data.root} has {source.num_classes}"
            )
        model_cls = hydra.utils.get_class(cfg.model._target_)
        model = model_cls.from_checkpoint(checkpoint, augmenter, **_model_kwargs(cfg))
        offset = checkpoint.iteration_id
    else:
        model_config = ModelConfig(
            **OmegaConf.to_container(cfg.model_config, resolve=True)  # type: ignore[arg-type]
        ).resolve(source.num_instances, num_classes=source.num_classes)
        model_cls = hydra.utils.get_class(cfg.model._target_)
        model = model_cls(
            config=model_config, augmenter=augmenter, **_model_kwargs(cfg)
        )

    _print_run_table(model.config, session_config, offset)
    return TrainingSession(model, source, session_config, offset=offset)


@hydra.main(version_base=None, config_path="conf", config_name="train")
def main(cfg: DictConfig) -> None:
    """Run training with the given Hydra config."""
    logger.remove()
    logger.add(sys.stderr, level=cfg.get("log_level", "INFO"))

    logger.info(f"Configuration:\n{OmegaConf.to_yaml(cfg)}")

    L.seed_everything(cfg.get("seed", 42), workers=True)

    build_session(cfg).run()


if __name__ == "__main__":
    main()
