"""
存储仓库接口定义
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..clock import utcnow
from ..exceptions import DuplicateEdgeError, PersistenceError, WorkflowValidationError
from ..models.workflow import NodeTemplate, NodeType, WorkflowEdge, WorkflowGraph, WorkflowNode
from ..models.trigger import StepExecutionLog, TriggerInstance, TriggerStatus


class WorkflowRepository(ABC):
    """工作流图存储仓库接口"""

    @abstractmethod
    async def create(self, workflow: WorkflowGraph) -> str:
        """新建工作流版本，(code, version) 重复时拒绝"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[WorkflowGraph]:
        """获取工作流及其节点和边"""
        pass

    @abstractmethod
    async def get_by_code(self, code: str, version: int = None) -> Optional[WorkflowGraph]:
        """指定版本，未指定时取最高版本"""
        pass

    @abstractmethod
    async def latest_version(self, code: str) -> int:
        """编码对应的最高版本，不存在时为 0"""
        pass

    @abstractmethod
    async def update(self, workflow: WorkflowGraph) -> bool:
        """保存头部字段（名称、激活状态、入口节点、载荷 Schema）"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """删除工作流及其节点和边"""
        pass

    @abstractmethod
    async def add_node(self, node: WorkflowNode) -> WorkflowNode:
        pass

    @abstractmethod
    async def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        pass

    @abstractmethod
    async def add_edge(self, edge: WorkflowEdge) -> WorkflowEdge:
        """新增边，(from, to) 已存在时抛出 DuplicateEdgeError"""
        pass

    @abstractmethod
    async def get_edge(self, edge_id: str) -> Optional[WorkflowEdge]:
        pass


class TemplateRepository(ABC):
    """节点模板存储仓库接口"""

    @abstractmethod
    async def save(self, template: NodeTemplate) -> str:
        pass

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[NodeTemplate]:
        pass

    @abstractmethod
    async def search(
        self,
        node_type: NodeType = None,
        text: str = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[NodeTemplate], int]:
        """匹配的模板（新的在前）及匹配总数"""
        pass


class TriggerRepository(ABC):
    """触发实例存储仓库接口"""

    @abstractmethod
    async def create_if_absent(self, instance: TriggerInstance) -> Tuple[TriggerInstance, bool]:
        """
        (workflow_id, idempotency_key) 不存在时原子插入

        Returns:
            (已存储的实例, 是否新建)
        """
        pass

    @abstractmethod
    async def get(self, instance_id: str) -> Optional[TriggerInstance]:
        pass

    @abstractmethod
    async def get_by_key(self, workflow_id: str, idempotency_key: str) -> Optional[TriggerInstance]:
        pass

    @abstractmethod
    async def search(
        self,
        workflow_id: str = None,
        status: TriggerStatus = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[TriggerInstance], int]:
        pass

    @abstractmethod
    async def list_ready(self, now: datetime, limit: int = 10) -> List[TriggerInstance]:
        """``available_at <= now`` 的排队实例，早的在前"""
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        instance_id: str,
        expected_status: TriggerStatus,
        changes: Dict[str, Any],
        expected_attempts: int = None,
        available_before: datetime = None
    ) -> Optional[TriggerInstance]:
        """
        比较并交换

        仅当存储的状态（以及尝试次数、``available_at <= available_before``）
        仍符合预期时应用 ``changes``，返回更新后的实例，否则返回 None
        """
        pass

    @abstractmethod
    async def exists_for_workflow(self, workflow_id: str) -> bool:
        pass

    @abstractmethod
    async def add_step_log(self, log: StepExecutionLog) -> str:
        pass

    @abstractmethod
    async def list_step_logs(self, trigger_id: str) -> List[StepExecutionLog]:
        pass


# 内存实现（测试、命令行试运行）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, WorkflowGraph] = {}
        self._lock = asyncio.Lock()

    async def create(self, workflow: WorkflowGraph) -> str:
        async with self._lock:
            for existing in self.workflows.values():
                if existing.code == workflow.code and existing.version == workflow.version:
                    raise WorkflowValidationError(
                        f"Workflow '{workflow.code}' version {workflow.version} already exists"
                    )
            self.workflows[workflow.id] = copy.deepcopy(workflow)
            return workflow.id

    async def get(self, workflow_id: str) -> Optional[WorkflowGraph]:
        workflow = self.workflows.get(workflow_id)
        return copy.deepcopy(workflow) if workflow else None

    async def get_by_code(self, code: str, version: int = None) -> Optional[WorkflowGraph]:
        candidates = [w for w in self.workflows.values() if w.code == code]
        if version is not None:
            candidates = [w for w in candidates if w.version == version]
        if not candidates:
            return None
        return copy.deepcopy(max(candidates, key=lambda w: w.version))

    async def latest_version(self, code: str) -> int:
        versions = [w.version for w in self.workflows.values() if w.code == code]
        return max(versions, default=0)

    async def update(self, workflow: WorkflowGraph) -> bool:
        async with self._lock:
            stored = self.workflows.get(workflow.id)
            if stored is None:
                return False
            stored.name = workflow.name
            stored.is_active = workflow.is_active
            stored.entry_node_id = workflow.entry_node_id
            stored.payload_schema = copy.deepcopy(workflow.payload_schema)
            stored.updated_at = utcnow()
            return True

    async def delete(self, workflow_id: str) -> bool:
        async with self._lock:
            return self.workflows.pop(workflow_id, None) is not None

    async def add_node(self, node: WorkflowNode) -> WorkflowNode:
        async with self._lock:
            workflow = self.workflows.get(node.workflow_id)
            if workflow is None:
                raise PersistenceError(f"Workflow '{node.workflow_id}' does not exist")
            if self._find_node(node.id) is not None:
                raise WorkflowValidationError(f"Node id '{node.id}' already in use")
            workflow.nodes[node.id] = copy.deepcopy(node)
            return node

    async def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        node = self._find_node(node_id)
        return copy.deepcopy(node) if node else None

    async def add_edge(self, edge: WorkflowEdge) -> WorkflowEdge:
        async with self._lock:
            workflow = self.workflows.get(edge.workflow_id)
            if workflow is None:
                raise PersistenceError(f"Workflow '{edge.workflow_id}' does not exist")
            if workflow.has_edge(edge.from_node_id, edge.to_node_id):
                raise DuplicateEdgeError(edge.from_node_id, edge.to_node_id)
            workflow.edges.append(copy.deepcopy(edge))
            return edge

    async def get_edge(self, edge_id: str) -> Optional[WorkflowEdge]:
        for workflow in self.workflows.values():
            for edge in workflow.edges:
                if edge.id == edge_id:
                    return copy.deepcopy(edge)
        return None

    def _find_node(self, node_id: str) -> Optional[WorkflowNode]:
        for workflow in self.workflows.values():
            if node_id in workflow.nodes:
                return workflow.nodes[node_id]
        return None


class InMemoryTemplateRepository(TemplateRepository):
    """内存模板仓库实现"""

    def __init__(self):
        self.templates: Dict[str, NodeTemplate] = {}
        self._lock = asyncio.Lock()

    async def save(self, template: NodeTemplate) -> str:
        async with self._lock:
            if template.code in self.templates:
                raise WorkflowValidationError(f"Template '{template.code}' already exists")
            self.templates[template.code] = copy.deepcopy(template)
            return template.id

    async def get_by_code(self, code: str) -> Optional[NodeTemplate]:
        template = self.templates.get(code)
        return copy.deepcopy(template) if template else None

    async def search(
        self,
        node_type: NodeType = None,
        text: str = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[NodeTemplate], int]:
        results = sorted(self.templates.values(), key=lambda t: t.created_at, reverse=True)
        if node_type is not None:
            results = [t for t in results if t.type == node_type]
        if text:
            needle = text.lower()
            results = [
                t for t in results
                if needle in t.code.lower() or needle in t.name.lower()
            ]
        return [copy.deepcopy(t) for t in results[offset:offset + limit]], len(results)


class InMemoryTriggerRepository(TriggerRepository):
    """内存触发实例仓库实现，去重和比较并交换由同一把锁保证原子性"""

    def __init__(self):
        self.instances: Dict[str, TriggerInstance] = {}
        self.step_logs: List[StepExecutionLog] = []
        self._keys: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def create_if_absent(self, instance: TriggerInstance) -> Tuple[TriggerInstance, bool]:
        key = (instance.workflow_id, instance.idempotency_key)
        async with self._lock:
            existing_id = self._keys.get(key)
            if existing_id is not None:
                return replace(self.instances[existing_id]), False
            self.instances[instance.id] = replace(instance)
            self._keys[key] = instance.id
            return replace(instance), True

    async def get(self, instance_id: str) -> Optional[TriggerInstance]:
        instance = self.instances.get(instance_id)
        return replace(instance) if instance else None

    async def get_by_key(self, workflow_id: str, idempotency_key: str) -> Optional[TriggerInstance]:
        instance_id = self._keys.get((workflow_id, idempotency_key))
        return await self.get(instance_id) if instance_id else None

    async def search(
        self,
        workflow_id: str = None,
        status: TriggerStatus = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[TriggerInstance], int]:
        results = sorted(self.instances.values(), key=lambda i: i.created_at, reverse=True)
        if workflow_id is not None:
            results = [i for i in results if i.workflow_id == workflow_id]
        if status is not None:
            results = [i for i in results if i.status == status]
        return [replace(i) for i in results[offset:offset + limit]], len(results)

    async def list_ready(self, now: datetime, limit: int = 10) -> List[TriggerInstance]:
        ready = [i for i in self.instances.values() if i.is_ready(now)]
        ready.sort(key=lambda i: (i.available_at, i.created_at))
        return [replace(i) for i in ready[:limit]]

    async def compare_and_set(
        self,
        instance_id: str,
        expected_status: TriggerStatus,
        changes: Dict[str, Any],
        expected_attempts: int = None,
        available_before: datetime = None
    ) -> Optional[TriggerInstance]:
        async with self._lock:
            stored = self.instances.get(instance_id)
            if stored is None or stored.status != expected_status:
                return None
            if expected_attempts is not None and stored.attempts != expected_attempts:
                return None
            if available_before is not None and stored.available_at > available_before:
                return None
            updated = replace(stored, **changes)
            updated.updated_at = utcnow()
            self.instances[instance_id] = updated
            return replace(updated)

    async def exists_for_workflow(self, workflow_id: str) -> bool:
        return any(i.workflow_id == workflow_id for i in self.instances.values())

    async def add_step_log(self, log: StepExecutionLog) -> str:
        async with self._lock:
            self.step_logs.append(replace(log))
            return log.id

    async def list_step_logs(self, trigger_id: str) -> List[StepExecutionLog]:
        logs = [replace(log) for log in self.step_logs if log.trigger_id == trigger_id]
        return sorted(logs, key=lambda log: log.started_at)
