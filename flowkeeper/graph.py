"""Flattened view of a definition's step tree.

Steps are numbered in preorder, which gives every step a stable
``step_index`` and makes forward progress on any path a strictly increasing
index. Nodes keep the links the run state machine needs to move between
steps without walking the tree again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple, Optional

from .contracts import BranchStep, Step, WorkflowDefinition, nested_paths


class HopKind(str, Enum):
    STEP = "STEP"
    JOIN = "JOIN"
    END = "END"


class Hop(NamedTuple):
    """Where control goes after a step: another step, a branch join, or the end."""

    kind: HopKind
    index: Optional[int] = None


@dataclass(frozen=True)
class StepNode:
    index: int
    step: Step
    parent: Optional[int]
    path_id: Optional[str]
    next: Optional[int]
    depth: int
    scope: tuple[Optional[int], Optional[str]]
    first_of: dict[str, Optional[int]] = field(default_factory=dict)

    @property
    def step_id(self) -> str:
        return self.step.step_id

    @property
    def on_main_path(self) -> bool:
        return self.parent is None


class StepGraph:
    def __init__(self, nodes: list[StepNode]) -> None:
        self.nodes = nodes
        self.by_id = {node.step_id: node for node in nodes}

    @classmethod
    def build(cls, definition: WorkflowDefinition) -> "StepGraph":
        raw: list[dict[str, Any]] = []

        def walk(steps, parent, path_id, depth, scope) -> Optional[int]:
            indexes: list[int] = []
            for step in steps:
                index = len(raw)
                entry = {
                    "index": index,
                    "step": step,
                    "parent": parent,
                    "path_id": path_id,
                    "next": None,
                    "depth": depth,
                    "scope": scope,
                    "first_of": {},
                }
                raw.append(entry)
                indexes.append(index)
                for child_path, children in nested_paths(step):
                    # Decisions do not open a goto scope; branches do.
                    child_scope = (index, child_path) if isinstance(step, BranchStep) else scope
                    entry["first_of"][child_path] = walk(
                        children, index, child_path, depth + 1, child_scope
                    )
            for current, following in zip(indexes, indexes[1:]):
                raw[current]["next"] = following
            return indexes[0] if indexes else None

        walk(definition.steps, None, None, 0, (None, None))
        return cls([StepNode(**entry) for entry in raw])

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, index: int) -> StepNode:
        return self.nodes[index]

    def get(self, step_id: str) -> Optional[StepNode]:
        return self.by_id.get(step_id)

    def first_main(self) -> Optional[int]:
        return 0 if self.nodes else None

    def successor(self, index: int) -> Hop:
        """Return the hop taken when the step at ``index`` finishes.

        Reaching the end of a decision outcome continues after the decision;
        reaching the end of a branch path joins the branch.
        """
        node = self.nodes[index]
        while True:
            if node.next is not None:
                return Hop(HopKind.STEP, node.next)
            if node.parent is None:
                return Hop(HopKind.END)
            container = self.nodes[node.parent]
            if isinstance(container.step, BranchStep):
                return Hop(HopKind.JOIN, container.index)
            node = container

    def within(self, index: int, container: int, path_id: str) -> bool:
        node = self.nodes[index]
        while node.parent is not None:
            if node.parent == container and node.path_id == path_id:
                return True
            node = self.nodes[node.parent]
        return False

    def subtree(self, container: int, path_id: str) -> list[int]:
        """Indexes of every step nested anywhere under one path of ``container``."""
        return [n.index for n in self.nodes if self.within(n.index, container, path_id)]

    def effective_milestone(self, index: int) -> Optional[str]:
        node = self.nodes[index]
        while True:
            if node.step.milestone_id is not None or node.parent is None:
                return node.step.milestone_id
            node = self.nodes[node.parent]
