"""
数据库表模型定义
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator


Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """以 naive UTC 存储、以带时区的 UTC 读出（SQLite 会丢弃 tzinfo）"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _now():
    return datetime.now(timezone.utc)


class WorkflowDefinition(Base):
    """工作流版本表"""
    __tablename__ = 'workflows'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    entry_node_id = Column(String(36))  # 可引用稍后创建的节点，不设外键
    payload_schema = Column(JSON)
    created_by = Column(String(255))
    created_at = Column(UTCDateTime, nullable=False, default=_now)
    updated_at = Column(UTCDateTime, nullable=False, default=_now, onupdate=_now)

    nodes = relationship("WorkflowNodeRow", back_populates="workflow", cascade="all, delete-orphan")
    edges = relationship("WorkflowEdgeRow", back_populates="workflow", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('code', 'version', name='unique_workflow_code_version'),
        CheckConstraint('version >= 1', name='check_workflow_version'),
        Index('idx_workflows_code', 'code'),
        Index('idx_workflows_active', 'is_active'),
    )


class WorkflowNodeRow(Base):
    """工作流节点表"""
    __tablename__ = 'workflow_nodes'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey('workflows.id', ondelete='CASCADE'), nullable=False)
    node_type = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    template_code = Column(String(255))
    bindings = Column(JSON, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now)

    workflow = relationship("WorkflowDefinition", back_populates="nodes")

    __table_args__ = (
        CheckConstraint("node_type IN ('email', 'sms', 'delay')", name='check_node_type'),
        Index('idx_workflow_nodes_workflow_id', 'workflow_id'),
    )


class WorkflowEdgeRow(Base):
    """工作流边表"""
    __tablename__ = 'workflow_edges'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey('workflows.id', ondelete='CASCADE'), nullable=False)
    from_node_id = Column(String(36), ForeignKey('workflow_nodes.id'), nullable=False)
    to_node_id = Column(String(36), ForeignKey('workflow_nodes.id'), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now)

    workflow = relationship("WorkflowDefinition", back_populates="edges")

    __table_args__ = (
        UniqueConstraint('workflow_id', 'from_node_id', 'to_node_id', name='unique_workflow_edge'),
        CheckConstraint('from_node_id <> to_node_id', name='check_edge_not_self'),
        Index('idx_workflow_edges_workflow_id', 'workflow_id'),
    )


class NodeTemplateRow(Base):
    """节点模板表"""
    __tablename__ = 'node_templates'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False)
    description = Column(Text)
    default_bindings = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (
        Index('idx_node_templates_type', 'type'),
        Index('idx_node_templates_created_at', 'created_at'),
    )


class TriggerInstanceRow(Base):
    """触发实例表"""
    __tablename__ = 'trigger_instances'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey('workflows.id'), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(UTCDateTime, nullable=False)
    cursor_current_node_id = Column(String(36))
    last_error = Column(Text)
    submitted_by = Column(String(255))
    created_at = Column(UTCDateTime, nullable=False, default=_now)
    updated_at = Column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint('workflow_id', 'idempotency_key', name='unique_trigger_idempotency_key'),
        CheckConstraint(
            "status IN ('enqueued', 'processing', 'completed', 'failed')",
            name='check_trigger_status'
        ),
        CheckConstraint('attempts >= 0', name='check_trigger_attempts'),
        Index('idx_trigger_instances_ready', 'status', 'available_at'),
        Index('idx_trigger_instances_workflow_id', 'workflow_id'),
    )


class StepExecutionLogRow(Base):
    """步骤执行日志表"""
    __tablename__ = 'step_execution_logs'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey('workflows.id'), nullable=False)
    trigger_id = Column(String(36), ForeignKey('trigger_instances.id'), nullable=False)
    node_id = Column(String(36), nullable=False)
    attempt = Column(Integer, nullable=False)
    started_at = Column(UTCDateTime, nullable=False)
    finished_at = Column(UTCDateTime, nullable=False)
    input_context = Column(Text)
    output_context = Column(Text)
    success = Column(Boolean, nullable=False)
    email_message_id = Column(String(255))
    sms_message_id = Column(String(255))
    error_message = Column(Text)

    __table_args__ = (
        Index('idx_step_execution_logs_trigger_id', 'trigger_id'),
    )
