"""
SQLAlchemy 存储仓库实现
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, select, true, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload

from ..clock import utcnow
from ..exceptions import DuplicateEdgeError, PersistenceError, WorkflowValidationError
from ..models.bindings import node_bindings_adapter
from ..models.trigger import StepExecutionLog, TriggerInstance, TriggerStatus
from ..models.workflow import NodeTemplate, NodeType, WorkflowEdge, WorkflowGraph, WorkflowNode
from .repository import TemplateRepository, TriggerRepository, WorkflowRepository
from .sqlalchemy_models import (
    Base,
    NodeTemplateRow,
    StepExecutionLogRow,
    TriggerInstanceRow,
    WorkflowDefinition as WorkflowDefinitionRow,
    WorkflowEdgeRow,
    WorkflowNodeRow
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self, create_tables: bool = True):
        """初始化数据库引擎，可选建表"""
        engine_options: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            engine_options.update(pool_size=20, max_overflow=10)

        self.engine = create_async_engine(self.database_url, **engine_options)
        self.async_session_maker = async_sessionmaker(
            self.engine,
            expire_on_commit=False
        )

        if create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话，成功提交，异常回滚"""
        if self.async_session_maker is None:
            raise PersistenceError("DatabaseManager.initialize() has not been called")

        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def create(self, workflow: WorkflowGraph) -> str:
        try:
            async with self.db.get_session() as session:
                session.add(WorkflowDefinitionRow(
                    id=workflow.id,
                    code=workflow.code,
                    name=workflow.name,
                    version=workflow.version,
                    is_active=workflow.is_active,
                    entry_node_id=workflow.entry_node_id,
                    payload_schema=workflow.payload_schema,
                    created_by=workflow.created_by,
                    created_at=workflow.created_at,
                    updated_at=workflow.updated_at
                ))
                await session.flush()
        except IntegrityError:
            raise WorkflowValidationError(
                f"Workflow '{workflow.code}' version {workflow.version} already exists"
            )
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[WorkflowGraph]:
        async with self.db.get_session() as session:
            result = await session.execute(
                self._graph_query().where(WorkflowDefinitionRow.id == workflow_id)
            )
            row = result.scalar_one_or_none()
            return self._row_to_graph(row) if row else None

    async def get_by_code(self, code: str, version: int = None) -> Optional[WorkflowGraph]:
        async with self.db.get_session() as session:
            query = self._graph_query().where(WorkflowDefinitionRow.code == code)
            if version is not None:
                query = query.where(WorkflowDefinitionRow.version == version)
            query = query.order_by(WorkflowDefinitionRow.version.desc()).limit(1)

            result = await session.execute(query)
            row = result.scalar_one_or_none()
            return self._row_to_graph(row) if row else None

    async def latest_version(self, code: str) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.max(WorkflowDefinitionRow.version))
                .where(WorkflowDefinitionRow.code == code)
            )
            return result.scalar() or 0

    async def update(self, workflow: WorkflowGraph) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowDefinitionRow)
                .where(WorkflowDefinitionRow.id == workflow.id)
                .values(
                    name=workflow.name,
                    is_active=workflow.is_active,
                    entry_node_id=workflow.entry_node_id,
                    payload_schema=workflow.payload_schema,
                    updated_at=utcnow()
                )
            )
            return result.rowcount > 0

    async def delete(self, workflow_id: str) -> bool:
        # SQLite 默认不执行外键级联，依次删除边、节点和工作流
        async with self.db.get_session() as session:
            await session.execute(
                delete(WorkflowEdgeRow).where(WorkflowEdgeRow.workflow_id == workflow_id)
            )
            await session.execute(
                delete(WorkflowNodeRow).where(WorkflowNodeRow.workflow_id == workflow_id)
            )
            result = await session.execute(
                delete(WorkflowDefinitionRow).where(WorkflowDefinitionRow.id == workflow_id)
            )
            return result.rowcount > 0

    async def add_node(self, node: WorkflowNode) -> WorkflowNode:
        try:
            async with self.db.get_session() as session:
                session.add(WorkflowNodeRow(
                    id=node.id,
                    workflow_id=node.workflow_id,
                    node_type=node.node_type.value,
                    name=node.name,
                    template_code=node.template_code,
                    bindings=node.bindings.model_dump(mode="json"),
                    created_at=node.created_at
                ))
                await session.flush()
        except IntegrityError as e:
            raise WorkflowValidationError(f"Node '{node.id}' could not be stored: {e.orig}")
        return node

    async def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowNodeRow, node_id)
            return self._row_to_node(row) if row else None

    async def add_edge(self, edge: WorkflowEdge) -> WorkflowEdge:
        try:
            async with self.db.get_session() as session:
                session.add(WorkflowEdgeRow(
                    id=edge.id,
                    workflow_id=edge.workflow_id,
                    from_node_id=edge.from_node_id,
                    to_node_id=edge.to_node_id,
                    created_at=edge.created_at
                ))
                await session.flush()
        except IntegrityError:
            raise DuplicateEdgeError(edge.from_node_id, edge.to_node_id)
        return edge

    async def get_edge(self, edge_id: str) -> Optional[WorkflowEdge]:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowEdgeRow, edge_id)
            return self._row_to_edge(row) if row else None

    def _graph_query(self):
        return select(WorkflowDefinitionRow).options(
            selectinload(WorkflowDefinitionRow.nodes),
            selectinload(WorkflowDefinitionRow.edges)
        )

    def _row_to_graph(self, row: WorkflowDefinitionRow) -> WorkflowGraph:
        nodes = sorted((self._row_to_node(n) for n in row.nodes), key=lambda n: n.created_at)
        edges = sorted((self._row_to_edge(e) for e in row.edges), key=lambda e: e.created_at)
        return WorkflowGraph(
            id=row.id,
            code=row.code,
            name=row.name,
            version=row.version,
            is_active=row.is_active,
            entry_node_id=row.entry_node_id,
            payload_schema=row.payload_schema,
            created_by=row.created_by,
            nodes={node.id: node for node in nodes},
            edges=edges,
            created_at=row.created_at,
            updated_at=row.updated_at
        )

    def _row_to_node(self, row: WorkflowNodeRow) -> WorkflowNode:
        return WorkflowNode(
            id=row.id,
            workflow_id=row.workflow_id,
            name=row.name,
            bindings=node_bindings_adapter.validate_python(row.bindings),
            template_code=row.template_code,
            created_at=row.created_at
        )

    def _row_to_edge(self, row: WorkflowEdgeRow) -> WorkflowEdge:
        return WorkflowEdge(
            id=row.id,
            workflow_id=row.workflow_id,
            from_node_id=row.from_node_id,
            to_node_id=row.to_node_id,
            created_at=row.created_at
        )


class SQLAlchemyTemplateRepository(TemplateRepository):
    """SQLAlchemy 节点模板仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, template: NodeTemplate) -> str:
        try:
            async with self.db.get_session() as session:
                session.add(NodeTemplateRow(
                    id=template.id,
                    code=template.code,
                    name=template.name,
                    type=template.type.value,
                    description=template.description,
                    default_bindings=template.default_bindings,
                    created_at=template.created_at
                ))
                await session.flush()
        except IntegrityError:
            raise WorkflowValidationError(f"Template '{template.code}' already exists")
        return template.id

    async def get_by_code(self, code: str) -> Optional[NodeTemplate]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(NodeTemplateRow).where(NodeTemplateRow.code == code)
            )
            row = result.scalar_one_or_none()
            return self._row_to_template(row) if row else None

    async def search(
        self,
        node_type: NodeType = None,
        text: str = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[NodeTemplate], int]:
        conditions = []
        if node_type is not None:
            conditions.append(NodeTemplateRow.type == node_type.value)
        if text:
            pattern = f"%{text.lower()}%"
            conditions.append(or_(
                func.lower(NodeTemplateRow.code).like(pattern),
                func.lower(NodeTemplateRow.name).like(pattern)
            ))

        async with self.db.get_session() as session:
            total = await session.execute(
                select(func.count()).select_from(NodeTemplateRow).where(and_(true(), *conditions))
            )
            result = await session.execute(
                select(NodeTemplateRow)
                .where(and_(true(), *conditions))
                .order_by(NodeTemplateRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [self._row_to_template(r) for r in result.scalars().all()], total.scalar() or 0

    def _row_to_template(self, row: NodeTemplateRow) -> NodeTemplate:
        return NodeTemplate(
            id=row.id,
            code=row.code,
            name=row.name,
            type=NodeType(row.type),
            description=row.description,
            default_bindings=dict(row.default_bindings or {}),
            created_at=row.created_at
        )


class SQLAlchemyTriggerRepository(TriggerRepository):
    """SQLAlchemy 触发实例仓库实现

    幂等依赖 (workflow_id, idempotency_key) 唯一约束，认领依赖条件 UPDATE。
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def create_if_absent(self, instance: TriggerInstance) -> Tuple[TriggerInstance, bool]:
        existing = await self.get_by_key(instance.workflow_id, instance.idempotency_key)
        if existing is not None:
            return existing, False

        try:
            async with self.db.get_session() as session:
                session.add(self._instance_to_row(instance))
                await session.flush()
            return instance, True
        except IntegrityError:
            # 并发插入失败，读回先写入的实例
            existing = await self.get_by_key(instance.workflow_id, instance.idempotency_key)
            if existing is None:
                raise PersistenceError(
                    f"Trigger insert for key '{instance.idempotency_key}' failed"
                )
            logger.info(
                f"Idempotency race on key '{instance.idempotency_key}', "
                f"returning instance {existing.id}"
            )
            return existing, False

    async def get(self, instance_id: str) -> Optional[TriggerInstance]:
        async with self.db.get_session() as session:
            row = await session.get(TriggerInstanceRow, instance_id)
            return self._row_to_instance(row) if row else None

    async def get_by_key(self, workflow_id: str, idempotency_key: str) -> Optional[TriggerInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TriggerInstanceRow).where(
                    and_(
                        TriggerInstanceRow.workflow_id == workflow_id,
                        TriggerInstanceRow.idempotency_key == idempotency_key
                    )
                )
            )
            row = result.scalar_one_or_none()
            return self._row_to_instance(row) if row else None

    async def search(
        self,
        workflow_id: str = None,
        status: TriggerStatus = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[TriggerInstance], int]:
        conditions = []
        if workflow_id is not None:
            conditions.append(TriggerInstanceRow.workflow_id == workflow_id)
        if status is not None:
            conditions.append(TriggerInstanceRow.status == status.value)

        async with self.db.get_session() as session:
            total = await session.execute(
                select(func.count()).select_from(TriggerInstanceRow).where(and_(true(), *conditions))
            )
            result = await session.execute(
                select(TriggerInstanceRow)
                .where(and_(true(), *conditions))
                .order_by(TriggerInstanceRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [self._row_to_instance(r) for r in result.scalars().all()], total.scalar() or 0

    async def list_ready(self, now: datetime, limit: int = 10) -> List[TriggerInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TriggerInstanceRow)
                .where(
                    and_(
                        TriggerInstanceRow.status == TriggerStatus.ENQUEUED.value,
                        TriggerInstanceRow.available_at <= now
                    )
                )
                .order_by(TriggerInstanceRow.available_at, TriggerInstanceRow.created_at)
                .limit(limit)
            )
            return [self._row_to_instance(r) for r in result.scalars().all()]

    async def compare_and_set(
        self,
        instance_id: str,
        expected_status: TriggerStatus,
        changes: Dict[str, Any],
        expected_attempts: int = None,
        available_before: datetime = None
    ) -> Optional[TriggerInstance]:
        values = {
            key: value.value if isinstance(value, TriggerStatus) else value
            for key, value in changes.items()
        }
        values["updated_at"] = utcnow()

        conditions = [
            TriggerInstanceRow.id == instance_id,
            TriggerInstanceRow.status == expected_status.value
        ]
        if expected_attempts is not None:
            conditions.append(TriggerInstanceRow.attempts == expected_attempts)
        if available_before is not None:
            conditions.append(TriggerInstanceRow.available_at <= available_before)

        try:
            async with self.db.get_session() as session:
                result = await session.execute(
                    update(TriggerInstanceRow)
                    .where(and_(*conditions))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None

                row = await session.get(TriggerInstanceRow, instance_id)
                return self._row_to_instance(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Conditional update of trigger {instance_id} failed: {e}")

    async def exists_for_workflow(self, workflow_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TriggerInstanceRow.id)
                .where(TriggerInstanceRow.workflow_id == workflow_id)
                .limit(1)
            )
            return result.first() is not None

    async def add_step_log(self, log: StepExecutionLog) -> str:
        async with self.db.get_session() as session:
            session.add(StepExecutionLogRow(
                id=log.id,
                workflow_id=log.workflow_id,
                trigger_id=log.trigger_id,
                node_id=log.node_id,
                attempt=log.attempt,
                started_at=log.started_at,
                finished_at=log.finished_at,
                input_context=log.input_context,
                output_context=log.output_context,
                success=log.success,
                email_message_id=log.email_message_id,
                sms_message_id=log.sms_message_id,
                error_message=log.error_message
            ))
            await session.flush()
        return log.id

    async def list_step_logs(self, trigger_id: str) -> List[StepExecutionLog]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(StepExecutionLogRow)
                .where(StepExecutionLogRow.trigger_id == trigger_id)
                .order_by(StepExecutionLogRow.started_at)
            )
            return [
                StepExecutionLog(
                    id=row.id,
                    workflow_id=row.workflow_id,
                    trigger_id=row.trigger_id,
                    node_id=row.node_id,
                    attempt=row.attempt,
                    started_at=row.started_at,
                    finished_at=row.finished_at,
                    input_context=row.input_context,
                    output_context=row.output_context,
                    success=row.success,
                    email_message_id=row.email_message_id,
                    sms_message_id=row.sms_message_id,
                    error_message=row.error_message
                )
                for row in result.scalars().all()
            ]

    def _instance_to_row(self, instance: TriggerInstance) -> TriggerInstanceRow:
        return TriggerInstanceRow(
            id=instance.id,
            workflow_id=instance.workflow_id,
            idempotency_key=instance.idempotency_key,
            payload=instance.payload,
            status=instance.status.value,
            attempts=instance.attempts,
            available_at=instance.available_at,
            cursor_current_node_id=instance.cursor_current_node_id,
            last_error=instance.last_error,
            submitted_by=instance.submitted_by,
            created_at=instance.created_at,
            updated_at=instance.updated_at
        )

    def _row_to_instance(self, row: TriggerInstanceRow) -> TriggerInstance:
        return TriggerInstance(
            id=row.id,
            workflow_id=row.workflow_id,
            idempotency_key=row.idempotency_key,
            payload=row.payload,
            status=TriggerStatus(row.status),
            attempts=row.attempts,
            available_at=row.available_at,
            cursor_current_node_id=row.cursor_current_node_id,
            last_error=row.last_error,
            submitted_by=row.submitted_by,
            created_at=row.created_at,
            updated_at=row.updated_at
        )
