"""
触发实例与执行模型
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from ..clock import utcnow
from .workflow import new_id


class TriggerStatus(str, Enum):
    """触发实例状态"""
    ENQUEUED = "enqueued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TriggerStatus.COMPLETED, TriggerStatus.FAILED)


@dataclass
class TriggerInstance:
    """触发实例：一次已提交、等待或正在执行的业务事件"""
    workflow_id: str
    idempotency_key: str
    payload: str
    id: str = field(default_factory=new_id)
    status: TriggerStatus = TriggerStatus.ENQUEUED
    attempts: int = 0
    available_at: datetime = field(default_factory=utcnow)
    cursor_current_node_id: Optional[str] = None
    last_error: Optional[str] = None
    submitted_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_ready(self, now: datetime) -> bool:
        return self.status == TriggerStatus.ENQUEUED and self.available_at <= now


@dataclass
class StepExecutionLog:
    """步骤执行日志：一次执行器调用的记录"""
    workflow_id: str
    trigger_id: str
    node_id: str
    attempt: int
    started_at: datetime
    finished_at: datetime
    success: bool
    input_context: Optional[str] = None
    output_context: Optional[str] = None
    email_message_id: Optional[str] = None
    sms_message_id: Optional[str] = None
    error_message: Optional[str] = None
    id: str = field(default_factory=new_id)


class ExecutionOutcome(str, Enum):
    """执行结果类型"""
    SUCCESS = "success"
    RECOVERABLE_FAILURE = "recoverable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass
class ExecutionResult:
    """节点执行器的返回值"""
    outcome: ExecutionOutcome
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    next_node_id: Optional[str] = None  # 在多条出边中选择分支
    message_id: Optional[str] = None
    resume_after: Optional[timedelta] = None  # 成功后推迟执行后继节点

    @classmethod
    def success(cls, output: Dict[str, Any] = None, **kwargs) -> "ExecutionResult":
        return cls(ExecutionOutcome.SUCCESS, output or {}, **kwargs)

    @classmethod
    def recoverable(cls, error: str, **kwargs) -> "ExecutionResult":
        return cls(ExecutionOutcome.RECOVERABLE_FAILURE, error=error, **kwargs)

    @classmethod
    def fatal(cls, error: str, **kwargs) -> "ExecutionResult":
        return cls(ExecutionOutcome.FATAL_FAILURE, error=error, **kwargs)

    @property
    def ok(self) -> bool:
        return self.outcome == ExecutionOutcome.SUCCESS
