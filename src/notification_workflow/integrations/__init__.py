"""外部系统集成：事件总线、节点执行器、校验器"""

# Event Bus
from .event_bus import (
    EventBus,
    Event,
    TRIGGER_SUBMITTED,
    TRIGGER_CLAIMED,
    TRIGGER_COMPLETED,
    TRIGGER_RETRY_SCHEDULED,
    TRIGGER_DEFERRED,
    TRIGGER_FAILED,
    WORKFLOW_ACTIVATED
)

# Node executors
from .executors import (
    NodeExecutor,
    ExecutorRegistry,
    LoggingExecutor,
    DelayExecutor,
    MockNodeExecutor,
    ExecutorCall
)

# Validators
from .validators import SchemaValidator

__all__ = [
    # Event Bus
    "EventBus",
    "Event",
    "TRIGGER_SUBMITTED",
    "TRIGGER_CLAIMED",
    "TRIGGER_COMPLETED",
    "TRIGGER_RETRY_SCHEDULED",
    "TRIGGER_DEFERRED",
    "TRIGGER_FAILED",
    "WORKFLOW_ACTIVATED",

    # Node executors
    "NodeExecutor",
    "ExecutorRegistry",
    "LoggingExecutor",
    "DelayExecutor",
    "MockNodeExecutor",
    "ExecutorCall",

    # Validators
    "SchemaValidator"
]
