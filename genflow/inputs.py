"""InputResolver: turns a node's input mapping into concrete values.

Descriptors:

- ``external.<dot.path>`` (or the older ``external_input.<dot.path>``) reads the
  caller-supplied payload.
- ``<outputKey>`` or ``<outputKey>.<dot.path>`` reads a prior node's output.
- Any non-string mapping value is passed through as a literal.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from genflow.errors import ResolutionError
from genflow.models import ActionResult, Node, NodeStatus

logger = logging.getLogger(__name__)

EXTERNAL_PREFIXES = ("external", "external_input")

MISSING = object()


def get_path(value: Any, path: list[str]) -> Any:
    """Traverse mappings by key and sequences by integer index. Returns MISSING on any miss."""
    current = value
    for part in path:
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def is_published(result: ActionResult | None) -> bool:
    """A result can feed downstream nodes if it completed, or was skipped with a default output."""
    if result is None:
        return False
    if result.status == NodeStatus.COMPLETED:
        return True
    return result.status == NodeStatus.SKIPPED and result.output is not None


def referenced_output_keys(node: Node) -> set[str]:
    """Upstream output keys a node's input mapping reads from."""
    keys = set()
    for source in node.input_mapping.values():
        if isinstance(source, str) and source:
            head = source.split(".", 1)[0]
            if head not in EXTERNAL_PREFIXES:
                keys.add(head)
    return keys


class InputResolver:
    """Pure read/transform over the external payload and recorded node results."""

    def resolve(
        self,
        node: Node,
        external_input: Mapping[str, Any] | None,
        node_results: Mapping[str, ActionResult],
    ) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        missing: list[str] = []
        optional = set(node.optional_inputs)

        for name, source in node.input_mapping.items():
            value = self._resolve_one(source, external_input or {}, node_results)
            if value is MISSING:
                if name in optional:
                    logger.debug(f"Optional input '{name}' of node {node.id} unresolved ({source}), omitting")
                    continue
                missing.append(f"{name} <- {source}")
                continue
            resolved[name] = copy.deepcopy(value)

        if missing:
            raise ResolutionError(
                f"Node {node.id} has unresolved required inputs: {', '.join(missing)}",
                missing=[m.split(" <- ")[0] for m in missing],
                code="UNRESOLVED_INPUT",
            )
        return resolved

    def _resolve_one(self, source: Any, external_input: Mapping[str, Any], node_results: Mapping[str, ActionResult]) -> Any:
        if not isinstance(source, str):
            return source

        head, _, rest = source.partition(".")
        path = rest.split(".") if rest else []

        if head in EXTERNAL_PREFIXES:
            return get_path(external_input, path) if path else dict(external_input)

        result = node_results.get(head)
        if not is_published(result):
            return MISSING
        return get_path(result.output, path)
