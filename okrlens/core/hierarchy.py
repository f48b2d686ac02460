"""
Objective forest reconstruction.

Goals arrive as a flat list where each record may reference its parent by
ID. The parent can be missing from the fetched set (another session, or
archived), in which case the goal becomes a flagged orphan root rather than
being dropped.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Set

from okrlens.core.config import DEFAULT_PARENT_FIELDS
from okrlens.core.store import Objective

logger = logging.getLogger(__name__)


def parent_ref(value: Any) -> Optional[str]:
    """Normalize a parent reference (plain ID or ``{"id": ...}``) to an ID."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        inner = value.get("id") or value.get("goalId")
        return str(inner) if inner else None
    if isinstance(value, (list, tuple)):
        return parent_ref(value[0]) if value else None
    return str(value)


class HierarchyBuilder:
    """
    Build an objective forest from flat parent references.

    Parameters
    ----------
    parent_fields : Sequence[str]
        Candidate parent fields in priority order. The first field holding a
        non-null value on any objective is used for the whole dataset.

    Attributes
    ----------
    parent_field : Optional[str]
        Field chosen by the last ``build`` (None = flat dataset)
    orphans : List[str]
        Objectives whose parent is outside the fetched set
    cycle_breaks : List[str]
        Objectives promoted to root because their parent chain loops
    """

    def __init__(self, parent_fields: Sequence[str] = DEFAULT_PARENT_FIELDS):
        self.parent_fields = list(parent_fields)
        self.parent_field: Optional[str] = None
        self.orphans: List[str] = []
        self.cycle_breaks: List[str] = []

    def detect_parent_field(self, objectives: Sequence[Objective]) -> Optional[str]:
        for candidate in self.parent_fields:
            if any(parent_ref(o.raw.get(candidate)) for o in objectives):
                return candidate
        return None

    @staticmethod
    def _find_cycle_node(obj_id: str, by_id: Dict[str, Objective]) -> str:
        """Walk up parent links from an unreachable objective until one repeats."""
        seen: Set[str] = set()
        node = obj_id
        while node not in seen:
            seen.add(node)
            node = by_id[node].parent_id
        return node

    def build(self, objectives: List[Objective]) -> List[Objective]:
        """
        Assign level, children, hierarchical index and orphan flags.

        Parameters
        ----------
        objectives : List[Objective]
            Objectives in fetch order; enriched in place

        Returns
        -------
        List[Objective]
            Every objective exactly once, in depth-first order
        """
        self.orphans = []
        self.cycle_breaks = []
        self.parent_field = self.detect_parent_field(objectives)

        by_id: Dict[str, Objective] = {}
        for obj in objectives:
            if obj.id in by_id:
                logger.warning(f"Duplicate objective {obj.id} ignored in hierarchy")
                continue
            by_id[obj.id] = obj

        if self.parent_field is None:
            logger.info(f"No parent field populated; treating {len(by_id)} objectives as flat")
        else:
            logger.info(f"Using parent field {self.parent_field!r}")

        children_of: Dict[str, List[str]] = defaultdict(list)
        roots: List[str] = []

        for obj in by_id.values():
            parent_id = None
            if self.parent_field is not None:
                parent_id = parent_ref(obj.raw.get(self.parent_field))
            if parent_id == obj.id:
                parent_id = None
            obj.parent_id = parent_id

            if parent_id is None:
                obj.is_orphan = False
                roots.append(obj.id)
            elif parent_id not in by_id:
                obj.is_orphan = True
                self.orphans.append(obj.id)
                roots.append(obj.id)
                logger.warning(
                    f"Objective {obj.id} ({obj.name}) references parent {parent_id} "
                    f"outside the fetched set; treating as orphan root"
                )
            else:
                obj.is_orphan = False
                children_of[parent_id].append(obj.id)

        ordered: List[Objective] = []
        visited: Set[str] = set()

        def visit(root_id: str, index: str) -> None:
            # explicit stack so deep parent chains cannot exhaust the recursion limit
            stack = [(root_id, 0, index)]
            while stack:
                obj_id, level, obj_index = stack.pop()
                if obj_id in visited:
                    continue
                visited.add(obj_id)
                obj = by_id[obj_id]
                obj.level = level
                obj.hierarchical_index = obj_index
                obj.children = list(children_of.get(obj_id, []))
                ordered.append(obj)
                pending = [c for c in obj.children if c not in visited]
                for position in range(len(pending), 0, -1):
                    stack.append((pending[position - 1], level + 1, f"{obj_index}.{position}"))

        root_position = 0
        for root_id in roots:
            root_position += 1
            visit(root_id, str(root_position))

        # Anything left hangs off a parent cycle with no path from a root
        for obj_id in by_id:
            if obj_id in visited:
                continue
            cycle_node = self._find_cycle_node(obj_id, by_id)
            self.cycle_breaks.append(cycle_node)
            logger.warning(f"Parent cycle detected at objective {cycle_node}; promoting to root")
            root_position += 1
            visit(cycle_node, str(root_position))

        for obj in ordered:
            # a cycle-break root may still be listed as its parent's child
            obj.children = [c for c in obj.children if by_id[c].level == obj.level + 1]

        logger.info(
            f"Built hierarchy: {len(ordered)} objectives, {root_position} roots, "
            f"{len(self.orphans)} orphans, {len(self.cycle_breaks)} cycle breaks"
        )
        return ordered
