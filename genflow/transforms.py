"""Data-transform registry: the provider-free work done by ``data-transform`` nodes.

A transform receives the node's resolved inputs and its ``config`` and returns
the node output. The transform is picked by ``config["transform"]`` and
defaults to ``passthrough``.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from genflow.errors import AdaptorError
from genflow.inputs import MISSING, get_path
from genflow.prompts import substitute

logger = logging.getLogger(__name__)

TransformImpl = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any] | Any]

DEFAULT_TRANSFORM = "passthrough"


class TransformRegistry:
    """Named transforms, sync or async."""

    def __init__(self):
        self._impls: dict[str, TransformImpl] = {}

    def register(self, name: str, impl: TransformImpl):
        self._impls[name] = impl

    def has(self, name: str) -> bool:
        return name in self._impls

    def names(self) -> list[str]:
        return list(self._impls.keys())

    async def apply(self, inputs: dict[str, Any], config: dict[str, Any]) -> Any:
        name = config.get("transform", DEFAULT_TRANSFORM)
        impl = self._impls.get(name)
        if impl is None:
            raise AdaptorError(f"Unknown transform '{name}'", code="UNKNOWN_TRANSFORM")

        try:
            result = impl(inputs, config)
            if hasattr(result, "__await__"):
                result = await result
        except AdaptorError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Transform '{name}' failed: {e}", exc_info=True)
            raise AdaptorError(f"Transform '{name}' failed: {e}", code="TRANSFORM_FAILED") from e
        return result


# ---------------------------------------------------------------------------
# Built-in transforms
# ---------------------------------------------------------------------------


def passthrough(inputs: dict[str, Any], config: dict[str, Any]) -> Any:
    """A single input is returned bare; several are returned as the mapping."""
    if len(inputs) == 1:
        return next(iter(inputs.values()))
    return dict(inputs)


def merge(inputs: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    """Shallow-merge mapping inputs in mapping order. Later keys win."""
    merged: dict[str, Any] = {}
    for name, value in inputs.items():
        if not isinstance(value, dict):
            raise TypeError(f"merge: input '{name}' is {type(value).__name__}, not an object")
        merged.update(value)
    return merged


def pick(inputs: dict[str, Any], config: dict[str, Any]) -> Any:
    path = config.get("path")
    if not path:
        raise ValueError("pick: config.path is required")
    value = get_path(inputs, str(path).split("."))
    if value is MISSING:
        if "default" in config:
            return config["default"]
        raise KeyError(f"pick: nothing at '{path}'")
    return value


def collect(inputs: dict[str, Any], config: dict[str, Any]) -> list[Any]:
    return list(inputs.values())


def flatten(inputs: dict[str, Any], config: dict[str, Any]) -> list[Any]:
    """Concatenate list inputs, wrapping scalars."""
    flat: list[Any] = []
    for value in inputs.values():
        if isinstance(value, list):
            flat.extend(value)
        else:
            flat.append(value)
    return flat


def join(inputs: dict[str, Any], config: dict[str, Any]) -> str:
    separator = config.get("separator", "\n\n")
    return separator.join(str(v) for v in inputs.values() if v is not None)


def template(inputs: dict[str, Any], config: dict[str, Any]) -> str:
    text, unresolved = substitute(config.get("template", ""), inputs)
    if unresolved:
        raise KeyError(f"template: no value for {', '.join(unresolved)}")
    return text


def create_default_transforms() -> TransformRegistry:
    registry = TransformRegistry()
    registry.register("passthrough", passthrough)
    registry.register("merge", merge)
    registry.register("pick", pick)
    registry.register("collect", collect)
    registry.register("flatten", flatten)
    registry.register("join", join)
    registry.register("template", template)
    return registry
