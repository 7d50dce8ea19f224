"""工作流、模板与触发实例模型"""

from .bindings import (
    EmailBindings, SmsBindings, DelayBindings, NodeBindings,
    node_bindings_adapter, parse_iso_duration
)
from .workflow import (
    NodeType, NodeTemplate, WorkflowNode, WorkflowEdge, WorkflowGraph
)
from .trigger import (
    TriggerStatus, TriggerInstance, StepExecutionLog,
    ExecutionOutcome, ExecutionResult
)
from .page import Page

__all__ = [
    "EmailBindings",
    "SmsBindings",
    "DelayBindings",
    "NodeBindings",
    "node_bindings_adapter",
    "parse_iso_duration",
    "NodeType",
    "NodeTemplate",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowGraph",
    "TriggerStatus",
    "TriggerInstance",
    "StepExecutionLog",
    "ExecutionOutcome",
    "ExecutionResult",
    "Page"
]
