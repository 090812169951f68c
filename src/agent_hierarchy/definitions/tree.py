"""Arena representation of an agent hierarchy with load-time structural checks."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from agent_hierarchy.definitions.models import (
    AgentNode,
    AgentRole,
    CommunicationConfig,
    FallbackPolicy,
    IsolationMode,
    NodeSpec,
    SamplingParameters,
    WorkflowDefinition,
)
from agent_hierarchy.engine.errors import DefinitionError


@dataclass(frozen=True)
class TreeNode:
    id: str
    name: str
    role: AgentRole
    declared_role: str
    sampling: SamplingParameters
    prompt_template: str
    isolation_mode: IsolationMode
    fallback: FallbackPolicy
    communication: CommunicationConfig
    parent_id: str | None
    child_ids: tuple[str, ...]
    depth: int

    @property
    def label(self) -> str:
        return self.name or self.id


class NodeTree:
    """Nodes stored by id; edges are parent/child id references."""

    def __init__(self, nodes: dict[str, TreeNode], entry_ids: tuple[str, ...]) -> None:
        self._nodes = nodes
        self.entry_ids = entry_ids

    @classmethod
    def from_definition(
        cls, definition: WorkflowDefinition, *, max_depth: int = 64
    ) -> NodeTree:
        if definition.nodes:
            entry_ids = definition.entry_ids or None
            return cls.from_flat(definition.nodes, entry_ids=entry_ids, max_depth=max_depth)
        return cls.from_nested(definition.agents, max_depth=max_depth)

    @classmethod
    def from_nested(cls, agents: Iterable[AgentNode], *, max_depth: int = 64) -> NodeTree:
        top_level = list(agents)
        specs: list[NodeSpec] = []
        stack = list(reversed(top_level))
        while stack:
            agent = stack.pop()
            specs.append(
                NodeSpec(
                    id=agent.id,
                    name=agent.name,
                    role=agent.role,
                    sampling=agent.sampling,
                    prompt_template=agent.prompt_template,
                    child_ids=[child.id for child in agent.sub_agents],
                    isolation_mode=agent.isolation_mode,
                    fallback=agent.fallback,
                    communication=agent.communication,
                )
            )
            stack.extend(reversed(agent.sub_agents))
        return cls.from_flat(
            specs, entry_ids=[agent.id for agent in top_level], max_depth=max_depth
        )

    @classmethod
    def from_flat(
        cls,
        specs: Iterable[NodeSpec],
        *,
        entry_ids: Iterable[str] | None = None,
        max_depth: int = 64,
    ) -> NodeTree:
        by_id: dict[str, NodeSpec] = {}
        for spec in specs:
            if spec.id in by_id:
                raise DefinitionError(f"Duplicate node id: {spec.id}")
            by_id[spec.id] = spec

        parents: dict[str, str] = {}
        for spec in by_id.values():
            for child_id in spec.child_ids:
                if child_id not in by_id:
                    raise DefinitionError(
                        f"Node {spec.id} references unknown child {child_id}"
                    )
                if child_id == spec.id:
                    raise DefinitionError(f"Cycle detected in hierarchy: {spec.id} -> {spec.id}")
                if child_id in parents:
                    raise DefinitionError(
                        f"Node {child_id} is reachable from more than one parent "
                        f"({parents[child_id]}, {spec.id})"
                    )
                parents[child_id] = spec.id

        if entry_ids is None:
            entries = tuple(node_id for node_id in by_id if node_id not in parents)
        else:
            entries = tuple(entry_ids)
        for entry_id in entries:
            if entry_id not in by_id:
                raise DefinitionError(f"Unknown entry node: {entry_id}")
            if entry_id in parents:
                raise DefinitionError(
                    f"Entry node {entry_id} is also a child of {parents[entry_id]}"
                )

        _reject_cycles(by_id)

        nodes: dict[str, TreeNode] = {}
        stack: list[tuple[str, int]] = [(entry_id, 0) for entry_id in reversed(entries)]
        while stack:
            node_id, depth = stack.pop()
            if depth >= max_depth:
                raise DefinitionError(
                    f"Node {node_id} exceeds the maximum hierarchy depth of {max_depth}"
                )
            spec = by_id[node_id]
            nodes[node_id] = TreeNode(
                id=spec.id,
                name=spec.name,
                role=AgentRole.resolve(spec.role),
                declared_role=spec.role,
                sampling=spec.sampling,
                prompt_template=spec.prompt_template,
                isolation_mode=spec.isolation_mode,
                fallback=spec.fallback,
                communication=spec.communication,
                parent_id=parents.get(node_id),
                child_ids=tuple(spec.child_ids),
                depth=depth,
            )
            stack.extend((child_id, depth + 1) for child_id in reversed(spec.child_ids))

        unreachable = sorted(set(by_id) - set(nodes))
        if unreachable:
            raise DefinitionError(f"Nodes not reachable from any entry: {unreachable}")
        return cls(nodes, entries)

    def get(self, node_id: str) -> TreeNode:
        try:
            return self._nodes[node_id]
        except KeyError as exc:
            raise DefinitionError(f"Unknown node: {node_id}") from exc

    def children(self, node_id: str) -> list[TreeNode]:
        return [self._nodes[child_id] for child_id in self.get(node_id).child_ids]

    def walk(self) -> Iterator[TreeNode]:
        """Yield nodes depth-first in dispatch order."""
        stack = list(reversed(self.entry_ids))
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.child_ids))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)


def _reject_cycles(by_id: dict[str, NodeSpec]) -> None:
    # 0 = unvisited, 1 = on the current path, 2 = finished
    color: dict[str, int] = dict.fromkeys(by_id, 0)
    for start in by_id:
        if color[start]:
            continue
        path: list[str] = []
        stack: list[tuple[str, Iterator[str]]] = [(start, iter(by_id[start].child_ids))]
        color[start] = 1
        path.append(start)
        while stack:
            node_id, children = stack[-1]
            child_id = next(children, None)
            if child_id is None:
                stack.pop()
                path.pop()
                color[node_id] = 2
                continue
            if color[child_id] == 1:
                cycle = path[path.index(child_id):] + [child_id]
                raise DefinitionError(f"Cycle detected in hierarchy: {' -> '.join(cycle)}")
            if color[child_id] == 0:
                color[child_id] = 1
                path.append(child_id)
                stack.append((child_id, iter(by_id[child_id].child_ids)))
