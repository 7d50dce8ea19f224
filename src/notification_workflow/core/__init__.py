"""Core notification workflow components"""

from .engine import WorkflowEngine
from .templates import NodeTemplateRegistry
from .graph import WorkflowGraphService, ValidationReport
from .triggers import TriggerService
from .state_machine import ExecutionStateMachine, TRANSITIONS
from .dispatcher import Dispatcher
from .parser import WorkflowParser, load_document
from .rendering import resolve_bindings, render

__all__ = [
    "WorkflowEngine",
    "NodeTemplateRegistry",
    "WorkflowGraphService",
    "ValidationReport",
    "TriggerService",
    "ExecutionStateMachine",
    "TRANSITIONS",
    "Dispatcher",
    "WorkflowParser",
    "load_document",
    "resolve_bindings",
    "render"
]
