"""
Flow Graph - immutable snapshot of a chatbot's nodes and edges for one walk
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.core.exceptions import FlowDefinitionError
from omniflow.db.models.chatbot import FlowEdge, FlowNode, FlowNodeType
from omniflow.domain.conditions import evaluate_condition, flow_variable_lookup, is_fallback_condition


@dataclass(frozen=True)
class NodeSpec:
    id: str
    type: str
    name: Optional[str] = None
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EdgeSpec:
    id: str
    source_id: str
    target_id: str
    condition: Optional[Mapping[str, Any]] = None
    position: int = 0
    label: Optional[str] = None


class FlowGraph:
    def __init__(self, chatbot_id: str, nodes: list[NodeSpec], edges: list[EdgeSpec]):
        self.chatbot_id = chatbot_id
        self._nodes = {node.id: node for node in nodes}
        self._outgoing: dict[str, list[EdgeSpec]] = {}
        for edge in edges:
            self._outgoing.setdefault(edge.source_id, []).append(edge)
        for source_edges in self._outgoing.values():
            source_edges.sort(key=lambda e: e.position)

    @classmethod
    async def load(cls, db: AsyncSession, chatbot_id: str) -> "FlowGraph":
        node_rows = (await db.execute(
            select(FlowNode).where(FlowNode.chatbot_id == chatbot_id)
        )).scalars().all()
        edge_rows = (await db.execute(
            select(FlowEdge)
            .where(FlowEdge.chatbot_id == chatbot_id)
            .order_by(FlowEdge.position, FlowEdge.created_at, FlowEdge.id)
        )).scalars().all()

        nodes = [
            NodeSpec(id=n.id, type=n.type, name=n.name, config=dict(n.config or {}))
            for n in node_rows
        ]
        edges = [
            EdgeSpec(
                id=e.id,
                source_id=e.source_id,
                target_id=e.target_id,
                condition=dict(e.condition) if e.condition else None,
                position=e.position or 0,
                label=e.label,
            )
            for e in edge_rows
        ]
        return cls(chatbot_id, nodes, edges)

    @property
    def start_node(self) -> NodeSpec:
        starts = [n for n in self._nodes.values() if n.type == FlowNodeType.START.value]
        if not starts:
            raise FlowDefinitionError(self.chatbot_id, "no start node")
        if len(starts) > 1:
            raise FlowDefinitionError(self.chatbot_id, f"{len(starts)} start nodes")
        return starts[0]

    def node(self, node_id: str) -> NodeSpec:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise FlowDefinitionError(self.chatbot_id, f"unknown node {node_id}") from None

    def outgoing(self, node_id: str) -> list[EdgeSpec]:
        return list(self._outgoing.get(node_id, []))

    def select_edge(self, node_id: str, variables: Mapping[str, Any]) -> Optional[EdgeSpec]:
        """
        First conditioned edge that matches, in declared order; otherwise the
        conditionless fallback; otherwise None.
        """
        lookup = flow_variable_lookup(variables)
        fallback = None
        for edge in self.outgoing(node_id):
            if is_fallback_condition(edge.condition):
                if fallback is None:
                    fallback = edge
                continue
            if evaluate_condition(edge.condition, lookup):
                return edge
        return fallback

    def next_node(self, node_id: str, variables: Mapping[str, Any]) -> Optional[NodeSpec]:
        edge = self.select_edge(node_id, variables)
        if edge is None:
            return None
        return self.node(edge.target_id)
