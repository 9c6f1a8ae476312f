"""Recipe validation and topological sequencing.

Pure computation, no I/O. Edges are the single source of truth for the
dependency graph; a node's ``dependencies`` list is derived from them when
empty and must agree with them when declared.
"""

from __future__ import annotations

import heapq
import logging

from genflow.errors import ValidationError
from genflow.models import ERROR_POLICIES, Recipe

logger = logging.getLogger(__name__)


def parse_recipe(data: dict) -> Recipe:
    """Build a Recipe from a stored document, reporting malformed nodes as validation errors."""
    try:
        return Recipe.from_dict(data)
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError("malformed_recipe", f"Recipe document is malformed: {e}") from e


class RecipeValidator:
    """Checks structural validity and produces a deterministic execution order."""

    def validate(self, recipe: Recipe) -> list[str]:
        """Validate the recipe and return node ids in execution order.

        Raises ValidationError naming the violated invariant and the nodes involved.
        """
        self._check_nodes(recipe)
        self._check_edges(recipe)
        self._check_dependencies(recipe)
        order = self._topological_order(recipe)
        logger.debug(f"Recipe {recipe.id} order: {' -> '.join(order)}")
        return order

    # -- structural checks --------------------------------------------------

    def _check_nodes(self, recipe: Recipe):
        if not recipe.nodes:
            raise ValidationError("empty_recipe", f"Recipe {recipe.id} has no nodes")

        seen_ids: set[str] = set()
        output_owner: dict[str, str] = {}
        for index, node in enumerate(recipe.nodes):
            if not node.id:
                raise ValidationError("missing_node_id", f"Node at index {index} is missing an id")
            if node.id in seen_ids:
                raise ValidationError("duplicate_node_id", f"Duplicate node id: {node.id}", [node.id])
            seen_ids.add(node.id)

            if not node.output_key:
                raise ValidationError("missing_output_key", f"Node {node.id} has no outputKey", [node.id])
            if node.output_key in output_owner:
                raise ValidationError(
                    "duplicate_output_key",
                    f"outputKey '{node.output_key}' is used by both {output_owner[node.output_key]} and {node.id}",
                    [output_owner[node.output_key], node.id],
                )
            if node.output_key in ("external", "external_input"):
                raise ValidationError(
                    "reserved_output_key", f"Node {node.id} uses reserved outputKey '{node.output_key}'", [node.id]
                )
            output_owner[node.output_key] = node.id

            policy = node.error_policy
            if policy.on_error not in ERROR_POLICIES:
                raise ValidationError(
                    "invalid_error_policy",
                    f"Node {node.id} has invalid errorPolicy.onError '{policy.on_error}'. "
                    f"Must be one of: {', '.join(ERROR_POLICIES)}",
                    [node.id],
                )
            if policy.retry_count < 0:
                raise ValidationError("invalid_error_policy", f"Node {node.id} has a negative retryCount", [node.id])

    def _check_edges(self, recipe: Recipe):
        ids = {n.id for n in recipe.nodes}
        for index, edge in enumerate(recipe.edges):
            missing = [end for end in (edge.source, edge.target) if end not in ids]
            if missing:
                raise ValidationError(
                    "dangling_edge",
                    f"Edge {index} ({edge.source} -> {edge.target}) references unknown node(s): {', '.join(missing)}",
                    missing,
                )
            if edge.source == edge.target:
                raise ValidationError("cycle", f"Self-loop on node {edge.source}", [edge.source])

    def _check_dependencies(self, recipe: Recipe):
        ids = {n.id for n in recipe.nodes}
        incoming = self.dependencies_of(recipe)
        for node in recipe.nodes:
            for dep in node.dependencies:
                if dep not in ids:
                    raise ValidationError(
                        "dangling_dependency",
                        f"Node {node.id} declares a dependency on unknown node {dep}",
                        [node.id, dep],
                    )
                if dep not in incoming[node.id]:
                    raise ValidationError(
                        "dependency_mismatch",
                        f"Node {node.id} declares a dependency on {dep}, but no edge exists from {dep} to {node.id}",
                        [node.id, dep],
                    )
            # An empty list means "take them from the edges"; a non-empty one must name every edge.
            undeclared = [src for src in incoming[node.id] if node.dependencies and src not in node.dependencies]
            if undeclared:
                raise ValidationError(
                    "dependency_mismatch",
                    f"Node {node.id} has incoming edges from {', '.join(undeclared)} missing from its dependencies",
                    [node.id, *undeclared],
                )

    # -- ordering -------------------------------------------------------------

    def _topological_order(self, recipe: Recipe) -> list[str]:
        """Kahn's algorithm; simultaneously eligible nodes are taken in declaration order."""
        position = {n.id: i for i, n in enumerate(recipe.nodes)}
        successors: dict[str, list[str]] = {n.id: [] for n in recipe.nodes}
        in_degree = {n.id: 0 for n in recipe.nodes}
        for source, target in self._unique_edges(recipe):
            successors[source].append(target)
            in_degree[target] += 1

        ready = [(position[nid], nid) for nid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, nid = heapq.heappop(ready)
            order.append(nid)
            for succ in successors[nid]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(ready, (position[succ], succ))

        if len(order) != len(recipe.nodes):
            remaining = {nid for nid, deg in in_degree.items() if deg > 0}
            cycle = self._find_cycle(recipe, remaining)
            raise ValidationError("cycle", f"Cycle detected: {' -> '.join(cycle + cycle[:1])}", cycle)
        return order

    def _find_cycle(self, recipe: Recipe, remaining: set[str]) -> list[str]:
        """Walk predecessors inside the unsorted remainder until a node repeats."""
        preds = self.dependencies_of(recipe)
        start = next(n.id for n in recipe.nodes if n.id in remaining)
        walk: list[str] = []
        seen: dict[str, int] = {}
        current = start
        while current not in seen:
            seen[current] = len(walk)
            walk.append(current)
            current = next(p for p in preds[current] if p in remaining)
        cycle = walk[seen[current]:]
        cycle.reverse()
        return cycle

    # -- graph queries --------------------------------------------------------

    @staticmethod
    def _unique_edges(recipe: Recipe) -> list[tuple[str, str]]:
        seen: set[tuple[str, str]] = set()
        unique = []
        for edge in recipe.edges:
            pair = (edge.source, edge.target)
            if pair not in seen:
                seen.add(pair)
                unique.append(pair)
        return unique

    def dependencies_of(self, recipe: Recipe) -> dict[str, list[str]]:
        """Incoming edge sources per node, in declaration order of the sources."""
        position = {n.id: i for i, n in enumerate(recipe.nodes)}
        deps: dict[str, list[str]] = {n.id: [] for n in recipe.nodes}
        for source, target in self._unique_edges(recipe):
            if target in deps and source in position:
                deps[target].append(source)
        for node_id in deps:
            deps[node_id].sort(key=lambda d: position[d])
        return deps

    def execution_ranks(self, recipe: Recipe, order: list[str] | None = None) -> list[list[str]]:
        """Group nodes by longest-path depth. Nodes within a rank share no edge."""
        order = order or self.validate(recipe)
        deps = self.dependencies_of(recipe)
        rank: dict[str, int] = {}
        for nid in order:
            rank[nid] = max((rank[d] + 1 for d in deps[nid]), default=0)
        groups: list[list[str]] = [[] for _ in range(max(rank.values(), default=-1) + 1)]
        for nid in order:
            groups[rank[nid]].append(nid)
        return groups

    def ancestors(self, recipe: Recipe, node_id: str) -> set[str]:
        deps = self.dependencies_of(recipe)
        found: set[str] = set()
        stack = list(deps.get(node_id, []))
        while stack:
            nid = stack.pop()
            if nid not in found:
                found.add(nid)
                stack.extend(deps[nid])
        return found

    def descendants(self, recipe: Recipe, node_id: str) -> set[str]:
        succs: dict[str, list[str]] = {n.id: [] for n in recipe.nodes}
        for source, target in self._unique_edges(recipe):
            succs[source].append(target)
        found: set[str] = set()
        stack = list(succs.get(node_id, []))
        while stack:
            nid = stack.pop()
            if nid not in found:
                found.add(nid)
                stack.extend(succs[nid])
        return found
