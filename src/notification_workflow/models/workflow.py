"""
工作流定义模型
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from ..clock import utcnow
from .bindings import NodeBindings


class NodeType(str, Enum):
    """节点类型"""
    EMAIL = "email"
    SMS = "sms"
    DELAY = "delay"


def new_id() -> str:
    return str(uuid4())


@dataclass
class NodeTemplate:
    """节点模板：可复用的节点配置"""
    code: str
    name: str
    type: NodeType
    default_bindings: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class WorkflowNode:
    """工作流节点"""
    workflow_id: str
    name: str
    bindings: NodeBindings
    id: str = field(default_factory=new_id)
    template_code: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.bindings.node_type)


@dataclass
class WorkflowEdge:
    """同一工作流内两个节点之间的有向边"""
    workflow_id: str
    from_node_id: str
    to_node_id: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class WorkflowGraph:
    """工作流定义的一个版本"""
    code: str
    name: str
    version: int = 1
    id: str = field(default_factory=new_id)
    is_active: bool = False
    entry_node_id: Optional[str] = None  # 可以引用稍后创建的节点
    payload_schema: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    nodes: Dict[str, WorkflowNode] = field(default_factory=dict)
    edges: List[WorkflowEdge] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self.nodes.get(node_id)

    def has_edge(self, from_node_id: str, to_node_id: str) -> bool:
        return any(
            e.from_node_id == from_node_id and e.to_node_id == to_node_id
            for e in self.edges
        )

    def out_edges(self, node_id: str) -> List[WorkflowEdge]:
        """按创建顺序返回出边"""
        edges = [e for e in self.edges if e.from_node_id == node_id]
        return sorted(edges, key=lambda e: e.created_at)

    def adjacency(self) -> Dict[str, List[str]]:
        adj: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            adj.setdefault(edge.from_node_id, []).append(edge.to_node_id)
        return adj

    def reachable_from(self, start: str) -> Set[str]:
        """从 ``start`` 出发（含自身）广度优先可达的节点"""
        adj = self.adjacency()
        seen = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbor in adj.get(current, []):
                if neighbor not in seen:
                    seen.add(neighbor)
                    queue.append(neighbor)
        return seen

    def would_create_cycle(self, from_node_id: str, to_node_id: str) -> bool:
        """添加 ``from -> to`` 是否会形成回到 ``from`` 的环"""
        if from_node_id == to_node_id:
            return True
        return from_node_id in self.reachable_from(to_node_id)

    def has_cycle(self) -> bool:
        """基于全部边的 Kahn 拓扑排序"""
        in_degree = {node_id: 0 for node_id in self.nodes}
        adj = self.adjacency()
        for targets in adj.values():
            for target in targets:
                in_degree[target] = in_degree.get(target, 0) + 1

        queue = deque([n for n, d in in_degree.items() if d == 0])
        visited = 0
        while queue:
            node_id = queue.popleft()
            visited += 1
            for neighbor in adj.get(node_id, []):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        return visited != len(in_degree)

    def validate(self) -> List[str]:
        """完整一致性检查，返回错误列表"""
        errors = []

        for edge in self.edges:
            for endpoint in (edge.from_node_id, edge.to_node_id):
                if endpoint not in self.nodes:
                    errors.append(f"Edge '{edge.id}' references unknown node '{endpoint}'")

        if self.has_cycle():
            errors.append("Workflow graph contains a cycle")

        if self.entry_node_id is None:
            errors.append("Entry node is not set")
        elif self.entry_node_id not in self.nodes:
            errors.append(f"Entry node '{self.entry_node_id}' does not belong to the workflow")
        else:
            reachable = self.reachable_from(self.entry_node_id)
            for node_id in self.unreachable_nodes(reachable):
                errors.append(f"Node '{node_id}' is not reachable from the entry node")

        return errors

    def unreachable_nodes(self, reachable: Optional[Set[str]] = None) -> List[str]:
        if reachable is None:
            if self.entry_node_id not in self.nodes:
                return sorted(self.nodes)
            reachable = self.reachable_from(self.entry_node_id)
        return [
            node.id
            for node in sorted(self.nodes.values(), key=lambda n: n.created_at)
            if node.id not in reachable
        ]
