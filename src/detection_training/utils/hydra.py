"""Hydra ConfigStore registration for pipeline components."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from hydra.core.config_store import ConfigStore
from loguru import logger


def register(
    *, group: str, name: str, **defaults: Any
) -> Callable[[type[Any]], type[Any]]:
    """Class decorator storing ``{_target_: <class path>, **defaults}`` in Hydra.

    Registered components can then be selected from the defaults list of a
    config (``- model: grid``) or on the command line (``model=grid``).

    Arguments:
        group: ConfigStore group, e.g. ``"model"`` or ``"augmenter"``.
        name: Option name within the group.
        **defaults: Default constructor arguments for the config node.
    """

    def _store(target_cls: type[Any]) -> type[Any]:
        node: dict[str, Any] = {
            "_target_": f"{target_cls.__module__}.{target_cls.__qualname__}",
            **defaults,
        }
        logger.debug(f"Registering {target_cls.__name__} as {group}/{name}")
        ConfigStore.instance().store(group=group, name=name, node=node)
        return target_cls

    return _store
