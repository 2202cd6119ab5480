"""Family tree reconstruction and traversal.

Turns the flat individual and parent-child edge tables into a forest for
display, walks ancestors and descendants one generation at a time, and
applies mutations that must keep the edge set consistent.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from errors import CycleDetectedError, NotFoundError
from family_db import FamilyStore
from models import Individual, ParentChildEdge

logger = logging.getLogger("familytree.tree")


# ============================================================================
# Forest building (pure functions)
# ============================================================================

def build_forest(
    individuals: Sequence[Individual], edges: Iterable[ParentChildEdge]
) -> list[dict[str, Any]]:
    """
    Build a forest of root individuals with nested ``children`` lists.

    Args:
        individuals: Individuals in display order (last name, first name)
        edges: Parent-child edges in insertion order

    Returns:
        Views of the root individuals (no incoming edge), in input order.
        A child with two parents shares one view object under both.
    """
    views: dict[int, dict[str, Any]] = {}
    for individual in individuals:
        view = individual.to_dict()
        view["children"] = []
        views[individual.id] = view

    child_ids: set[int] = set()
    linked: set[tuple[int, int]] = set()
    for edge in edges:
        child_ids.add(edge.child_id)
        parent = views.get(edge.parent_id)
        child = views.get(edge.child_id)
        if parent is None or child is None:
            continue
        if (edge.parent_id, edge.child_id) in linked:
            continue
        linked.add((edge.parent_id, edge.child_id))
        parent["children"].append(child)

    return [views[i.id] for i in individuals if i.id not in child_ids]


def render_forest(
    roots: Sequence[dict[str, Any]], max_depth: int | None = None
) -> list[dict[str, Any]]:
    """
    Expand a forest into independent nested dicts, safe to serialize.

    The ids on the current root-to-node path are tracked; meeting one of them
    again means the edges loop and ``CycleDetectedError`` is raised.
    ``max_depth`` (0 = roots only) truncates deeper levels.
    """
    def expand(node: dict[str, Any], path: list[int], depth: int) -> dict[str, Any]:
        node_id = node["id"]
        if node_id in path:
            cycle = path[path.index(node_id):] + [node_id]
            raise CycleDetectedError(cycle)

        rendered = {k: v for k, v in node.items() if k != "children"}
        if max_depth is not None and depth >= max_depth:
            rendered["children"] = []
            return rendered

        path.append(node_id)
        rendered["children"] = [expand(child, path, depth + 1) for child in node["children"]]
        path.pop()
        return rendered

    return [expand(root, [], 0) for root in roots]


# ============================================================================
# Service
# ============================================================================

class FamilyTree:
    """Read-time views and consistent mutations over a ``FamilyStore``."""

    def __init__(self, store: FamilyStore, default_generations: int = 3):
        self.store = store
        self.default_generations = default_generations

    # ------------------------------------------------------------------
    # Forest
    # ------------------------------------------------------------------

    def build_forest(self) -> list[dict[str, Any]]:
        individuals = self.store.list_individuals()
        edges = self.store.list_edges()
        roots = build_forest(individuals, edges)
        logger.info(
            f"Built forest: {len(individuals)} individuals, {len(edges)} edges, {len(roots)} roots"
        )
        return roots

    def render_forest(self, max_depth: int | None = None) -> list[dict[str, Any]]:
        return render_forest(self.build_forest(), max_depth=max_depth)

    # ------------------------------------------------------------------
    # Generation walks
    # ------------------------------------------------------------------

    def get_ancestors(self, individual_id: int, max_generations: int | None = None) -> list[dict[str, Any]]:
        """Ancestors within ``max_generations`` hops; generation 0 = parents."""
        return self._walk(
            individual_id,
            max_generations,
            fetch_edges=self.store.get_edges_by_child_ids,
            step=lambda edge: edge.parent_id,
            direction="ancestors",
        )

    def get_descendants(self, individual_id: int, max_generations: int | None = None) -> list[dict[str, Any]]:
        """Descendants within ``max_generations`` hops; generation 0 = children."""
        return self._walk(
            individual_id,
            max_generations,
            fetch_edges=self.store.get_edges_by_parent_ids,
            step=lambda edge: edge.child_id,
            direction="descendants",
        )

    def _walk(
        self,
        individual_id: int,
        max_generations: int | None,
        fetch_edges: Callable[[Iterable[int]], list[ParentChildEdge]],
        step: Callable[[ParentChildEdge], int],
        direction: str,
    ) -> list[dict[str, Any]]:
        if max_generations is None:
            max_generations = self.default_generations
        if max_generations < 0:
            raise ValueError(f"max_generations must be non-negative, got {max_generations}")
        if max_generations == 0:
            return []

        self.store.require_individual(individual_id)
        logger.info(f"Walking {direction} of {individual_id} for up to {max_generations} generation(s)")

        found: list[dict[str, Any]] = []
        seen = {individual_id}
        frontier = [individual_id]
        for generation in range(max_generations):
            if not frontier:
                break
            new_ids = []
            for edge in fetch_edges(frontier):
                next_id = step(edge)
                if next_id not in seen:
                    seen.add(next_id)
                    new_ids.append(next_id)

            # Edges to absent individuals are skipped and do not expand
            individuals = self.store.get_individuals_by_ids(new_ids)
            frontier = []
            for next_id in new_ids:
                individual = individuals.get(next_id)
                if individual is None:
                    continue
                entry = individual.to_dict()
                entry["generation"] = generation
                found.append(entry)
                frontier.append(next_id)
            logger.debug(f"{direction} generation {generation}: {frontier}")

        return found

    def is_descendant(self, ancestor_id: int, candidate_id: int, ignore_edge_id: int | None = None) -> bool:
        """
        True if ``candidate_id`` is reachable from ``ancestor_id`` through child edges.

        ``ignore_edge_id`` leaves one stored edge out of the walk, e.g. an
        edge that is about to be re-pointed.
        """
        seen = {ancestor_id}
        frontier = [ancestor_id]
        while frontier:
            next_frontier = []
            for edge in self.store.get_edges_by_parent_ids(frontier):
                if edge.id == ignore_edge_id:
                    continue
                if edge.child_id == candidate_id:
                    return True
                if edge.child_id not in seen:
                    seen.add(edge.child_id)
                    next_frontier.append(edge.child_id)
            frontier = next_frontier
        return False

    def find_leaves(self) -> list[dict[str, Any]]:
        """Individuals with no children (the youngest generation)."""
        return [individual.to_dict() for individual in self.store.list_leaf_individuals()]

    # ------------------------------------------------------------------
    # Profiles and lookups
    # ------------------------------------------------------------------

    def get_profile(self, individual_id: int) -> dict[str, Any]:
        individual = self.store.require_individual(individual_id)
        profile = individual.to_dict()
        profile["parents"] = [e.to_dict() for e in self.store.get_edges_by_child_ids([individual_id])]
        profile["children"] = [e.to_dict() for e in self.store.get_edges_by_parent_ids([individual_id])]
        profile["marriages"] = [m.to_dict() for m in self.store.get_marriages_for(individual_id)]
        profile["events"] = [e.to_dict() for e in self.store.list_events(individual_id)]
        return profile

    def search(self, term: str) -> list[dict[str, Any]]:
        return [individual.to_dict() for individual in self.store.search_individuals(term)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def delete_individual(self, individual_id: int) -> bool:
        """
        Delete an individual with its edges, marriages and attached records.

        Descendants are kept; they lose the edge and may become roots.
        """
        self.store.require_individual(individual_id)
        logger.info(f"Deleting individual {individual_id} and dependent records")
        return self.store.delete_individual_cascade(individual_id)

    def add_relationship(self, values: dict[str, Any]) -> ParentChildEdge:
        parent_id, child_id = values["parent_id"], values["child_id"]
        self._check_new_edge(parent_id, child_id)
        return self.store.add_edge(values)

    def update_relationship(self, edge_id: int, values: dict[str, Any]) -> ParentChildEdge:
        edge = self.store.get_edge(edge_id)
        if edge is None:
            raise NotFoundError("relationship", edge_id)
        parent_id = values.get("parent_id", edge.parent_id)
        child_id = values.get("child_id", edge.child_id)
        if (parent_id, child_id) != (edge.parent_id, edge.child_id):
            self._check_new_edge(parent_id, child_id, ignore_edge_id=edge_id)
        return self.store.update_edge(edge_id, values)

    def _check_new_edge(self, parent_id: int, child_id: int, ignore_edge_id: int | None = None) -> None:
        self.store.require_individual(parent_id)
        self.store.require_individual(child_id)
        if parent_id == child_id or self.is_descendant(child_id, parent_id, ignore_edge_id):
            logger.warning(f"Rejected relationship {parent_id} -> {child_id}: circular ancestry")
            raise CycleDetectedError([child_id, parent_id, child_id])

    def add_marriage(self, values: dict[str, Any]):
        self.store.require_individual(values["spouse1_id"])
        self.store.require_individual(values["spouse2_id"])
        return self.store.add_marriage(values)

    def update_marriage(self, marriage_id: int, values: dict[str, Any]):
        for key in ("spouse1_id", "spouse2_id"):
            if key in values:
                self.store.require_individual(values[key])
        return self.store.update_marriage(marriage_id, values)
