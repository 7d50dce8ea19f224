"""
工作流图服务
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..exceptions import (
    CycleDetectedError, DuplicateEdgeError, NotFoundError,
    UnknownNodeError, WorkflowValidationError
)
from ..integrations.event_bus import EventBus, WORKFLOW_ACTIVATED
from ..integrations.validators import SchemaValidator
from ..models.bindings import BINDING_FIELDS
from ..models.workflow import WorkflowEdge, WorkflowGraph, WorkflowNode, new_id
from ..storage.repository import TriggerRepository, WorkflowRepository
from .templates import NodeTemplateRegistry


logger = logging.getLogger(__name__)


_NODE_SPEC_KEYS = {"id", "name", "type", "node_type", "template", "template_code", "bindings"}
_ALL_BINDING_KEYS = {name for names in BINDING_FIELDS.values() for name in names}


@dataclass
class ValidationReport:
    """工作流校验结果"""
    workflow_id: str
    errors: List[str] = field(default_factory=list)
    unreachable: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "ok": self.ok,
            "errors": list(self.errors),
            "unreachable": list(self.unreachable)
        }


class WorkflowGraphService:
    """工作流图的创建、编辑与校验

    同一工作流的结构修改串行执行，环检测总是基于一致的快照。
    被触发实例引用过的工作流不可再修改，修改应创建新版本。
    """

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        trigger_repository: TriggerRepository,
        template_registry: Optional[NodeTemplateRegistry] = None,
        validator: Optional[SchemaValidator] = None,
        event_bus: Optional[EventBus] = None
    ):
        self.workflow_repository = workflow_repository
        self.trigger_repository = trigger_repository
        self.template_registry = template_registry
        self.validator = validator or SchemaValidator()
        self.event_bus = event_bus or EventBus()
        self._locks: Dict[str, asyncio.Lock] = {}

    async def create_workflow(
        self,
        code: str,
        name: str,
        entry_node_id: Optional[str] = None,
        version: Optional[int] = None,
        principal: Optional[str] = None,
        payload_schema: Optional[Dict[str, Any]] = None
    ) -> WorkflowGraph:
        """
        创建工作流版本

        Args:
            code: 工作流编码
            name: 名称
            entry_node_id: 入口节点，可以引用稍后创建的节点
            version: 版本号，默认为当前最大版本 + 1
            principal: 创建者
            payload_schema: 触发载荷的 JSON Schema

        Returns:
            WorkflowGraph: 未激活的新工作流
        """
        errors = []
        if not code or not code.strip():
            errors.append("code: must not be empty")
        if not name or not name.strip():
            errors.append("name: must not be empty")
        if version is not None and (not isinstance(version, int) or version < 1):
            errors.append("version: must be a positive integer")
        if errors:
            raise WorkflowValidationError("Invalid workflow", errors)

        if payload_schema is not None:
            self.validator.check_schema(payload_schema)

        if version is None:
            version = await self.workflow_repository.latest_version(code) + 1

        workflow = WorkflowGraph(
            code=code,
            name=name,
            version=version,
            entry_node_id=entry_node_id,
            payload_schema=payload_schema,
            created_by=principal
        )
        await self.workflow_repository.create(workflow)

        logger.info(f"Created workflow '{code}' v{version} ({workflow.id})")
        return workflow

    async def add_node(self, workflow_id: str, spec: Dict[str, Any]) -> WorkflowNode:
        """
        添加节点

        ``spec`` 包含 ``type``、``name``、绑定字段（平铺或放在 ``bindings`` 下），
        可选 ``id`` 和 ``template``。校验失败时不会写入任何内容。
        """
        if not isinstance(spec, dict):
            raise WorkflowValidationError("Node spec must be a mapping")

        spec = await self._expand_template(spec)

        async with self._lock_for(workflow_id):
            workflow = await self._load(workflow_id)
            await self._ensure_mutable(workflow)

            node = self._build_node(workflow, spec)
            await self.workflow_repository.add_node(node)

        logger.info(
            f"Added {node.node_type.value} node '{node.name}' ({node.id}) "
            f"to workflow {workflow_id}"
        )
        return node

    async def add_edge(self, workflow_id: str, from_node_id: str, to_node_id: str) -> WorkflowEdge:
        """
        添加边

        Raises:
            UnknownNodeError: 端点不属于该工作流
            DuplicateEdgeError: 边已存在
            CycleDetectedError: 会形成环（包括自环）
        """
        async with self._lock_for(workflow_id):
            workflow = await self._load(workflow_id)
            await self._ensure_mutable(workflow)

            for node_id in (from_node_id, to_node_id):
                if node_id not in workflow.nodes:
                    raise UnknownNodeError(workflow_id, node_id)

            if workflow.has_edge(from_node_id, to_node_id):
                raise DuplicateEdgeError(from_node_id, to_node_id)

            if workflow.would_create_cycle(from_node_id, to_node_id):
                raise CycleDetectedError(from_node_id, to_node_id)

            edge = WorkflowEdge(
                workflow_id=workflow_id,
                from_node_id=from_node_id,
                to_node_id=to_node_id
            )
            await self.workflow_repository.add_edge(edge)

        logger.debug(f"Added edge {from_node_id} -> {to_node_id} to workflow {workflow_id}")
        return edge

    async def set_entry_node(self, workflow_id: str, node_id: str) -> WorkflowGraph:
        """设置入口节点"""
        async with self._lock_for(workflow_id):
            workflow = await self._load(workflow_id)
            await self._ensure_mutable(workflow)

            if node_id not in workflow.nodes:
                raise UnknownNodeError(workflow_id, node_id)

            workflow.entry_node_id = node_id
            await self.workflow_repository.update(workflow)

        logger.info(f"Workflow {workflow_id} entry node set to {node_id}")
        return workflow

    async def validate(self, workflow_id: str) -> ValidationReport:
        """完整校验：无环、入口节点有效、所有节点可达"""
        workflow = await self._load(workflow_id)
        errors = workflow.validate()
        unreachable = workflow.unreachable_nodes() if workflow.entry_node_id in workflow.nodes else []
        return ValidationReport(workflow_id=workflow_id, errors=errors, unreachable=unreachable)

    async def activate(self, workflow_id: str) -> WorkflowGraph:
        """激活工作流，要求校验通过"""
        report = await self.validate(workflow_id)
        if not report.ok:
            raise WorkflowValidationError(
                f"Workflow {workflow_id} cannot be activated", report.errors
            )

        workflow = await self._set_active(workflow_id, True)
        await self.event_bus.publish(WORKFLOW_ACTIVATED, {
            "workflow_id": workflow.id,
            "code": workflow.code,
            "version": workflow.version
        })
        return workflow

    async def deactivate(self, workflow_id: str) -> WorkflowGraph:
        """停用工作流，已有触发实例不受影响"""
        return await self._set_active(workflow_id, False)

    async def new_version(self, workflow_id: str, principal: Optional[str] = None) -> WorkflowGraph:
        """
        复制工作流为下一个版本

        节点和边获得新 ID，入口节点随之映射；新版本未激活，可继续编辑。
        """
        source = await self._load(workflow_id)
        target = await self.create_workflow(
            code=source.code,
            name=source.name,
            principal=principal,
            payload_schema=source.payload_schema
        )

        id_map: Dict[str, str] = {}
        for node in sorted(source.nodes.values(), key=lambda n: n.created_at):
            clone = WorkflowNode(
                workflow_id=target.id,
                name=node.name,
                bindings=node.bindings,
                template_code=node.template_code
            )
            id_map[node.id] = clone.id
            await self.workflow_repository.add_node(clone)

        for edge in source.edges:
            await self.workflow_repository.add_edge(WorkflowEdge(
                workflow_id=target.id,
                from_node_id=id_map[edge.from_node_id],
                to_node_id=id_map[edge.to_node_id]
            ))

        if source.entry_node_id in id_map:
            target.entry_node_id = id_map[source.entry_node_id]
            await self.workflow_repository.update(target)

        logger.info(f"Workflow '{source.code}' v{source.version} copied to v{target.version}")
        return await self._load(target.id)

    async def discard(self, workflow_id: str) -> bool:
        """删除未被触发实例引用的工作流版本"""
        async with self._lock_for(workflow_id):
            workflow = await self._load(workflow_id)
            await self._ensure_mutable(workflow)
            deleted = await self.workflow_repository.delete(workflow_id)
        self._locks.pop(workflow_id, None)

        logger.info(f"Discarded workflow '{workflow.code}' v{workflow.version} ({workflow_id})")
        return deleted

    async def get_workflow(self, workflow_id: str) -> WorkflowGraph:
        return await self._load(workflow_id)

    async def get_node(self, node_id: str) -> WorkflowNode:
        node = await self.workflow_repository.get_node(node_id)
        if node is None:
            raise NotFoundError("Node", node_id)
        return node

    async def get_edge(self, edge_id: str) -> WorkflowEdge:
        edge = await self.workflow_repository.get_edge(edge_id)
        if edge is None:
            raise NotFoundError("Edge", edge_id)
        return edge

    async def list_nodes(self, workflow_id: str) -> List[WorkflowNode]:
        workflow = await self._load(workflow_id)
        return sorted(workflow.nodes.values(), key=lambda n: n.created_at)

    async def list_edges(self, workflow_id: str) -> List[WorkflowEdge]:
        workflow = await self._load(workflow_id)
        return sorted(workflow.edges, key=lambda e: e.created_at)

    async def latest(self, code: str) -> WorkflowGraph:
        """编码对应的最高版本"""
        workflow = await self.workflow_repository.get_by_code(code)
        if workflow is None:
            raise NotFoundError("Workflow", code)
        return workflow

    async def _load(self, workflow_id: str) -> WorkflowGraph:
        workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    async def _ensure_mutable(self, workflow: WorkflowGraph):
        if await self.trigger_repository.exists_for_workflow(workflow.id):
            raise WorkflowValidationError(
                f"Workflow '{workflow.code}' v{workflow.version} is referenced by trigger "
                f"instances and can no longer be modified; create a new version instead"
            )

    async def _set_active(self, workflow_id: str, active: bool) -> WorkflowGraph:
        async with self._lock_for(workflow_id):
            workflow = await self._load(workflow_id)
            workflow.is_active = active
            await self.workflow_repository.update(workflow)

        logger.info(f"Workflow {workflow_id} {'activated' if active else 'deactivated'}")
        return workflow

    async def _expand_template(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        template_code = spec.get("template")
        if not template_code:
            return spec
        if self.template_registry is None:
            raise WorkflowValidationError(
                f"Node spec references template '{template_code}' but no template registry is configured"
            )
        overrides = {k: v for k, v in spec.items() if k != "template"}
        return await self.template_registry.instantiate(template_code, overrides)

    def _build_node(self, workflow: WorkflowGraph, spec: Dict[str, Any]) -> WorkflowNode:
        errors = []

        unknown = sorted(set(spec) - _NODE_SPEC_KEYS - _ALL_BINDING_KEYS)
        errors.extend(f"{key}: unknown field" for key in unknown)

        name = spec.get("name")
        if not name or not str(name).strip():
            errors.append("name: must not be empty")

        node_type = spec.get("type") or spec.get("node_type")
        if not node_type:
            errors.append("type: field required")

        node_id = spec.get("id") or new_id()
        if node_id in workflow.nodes:
            errors.append(f"id: node '{node_id}' already exists")

        if errors:
            raise WorkflowValidationError("Invalid node spec", errors)

        bindings = dict(spec.get("bindings") or {})
        for key in _ALL_BINDING_KEYS:
            if key in spec:
                bindings[key] = spec[key]

        return WorkflowNode(
            id=node_id,
            workflow_id=workflow.id,
            name=str(name),
            bindings=self.validator.validate_bindings(str(node_type), bindings),
            template_code=spec.get("template_code")
        )

    def _lock_for(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = self._locks[workflow_id] = asyncio.Lock()
        return lock
