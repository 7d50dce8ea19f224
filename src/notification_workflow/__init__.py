"""
Notification Workflow Engine - 通知工作流引擎
"""

__version__ = "0.1.0"

from .config import EngineSettings, RetryPolicy, DispatcherSettings
from .core.engine import WorkflowEngine
from .core.dispatcher import Dispatcher
from .core.graph import WorkflowGraphService
from .core.state_machine import ExecutionStateMachine
from .core.templates import NodeTemplateRegistry
from .core.triggers import TriggerService
from .models.workflow import NodeTemplate, NodeType, WorkflowEdge, WorkflowGraph, WorkflowNode
from .models.trigger import ExecutionResult, TriggerInstance, TriggerStatus

__all__ = [
    "EngineSettings",
    "RetryPolicy",
    "DispatcherSettings",
    "WorkflowEngine",
    "Dispatcher",
    "WorkflowGraphService",
    "ExecutionStateMachine",
    "NodeTemplateRegistry",
    "TriggerService",
    "NodeTemplate",
    "NodeType",
    "WorkflowEdge",
    "WorkflowGraph",
    "WorkflowNode",
    "ExecutionResult",
    "TriggerInstance",
    "TriggerStatus"
]
