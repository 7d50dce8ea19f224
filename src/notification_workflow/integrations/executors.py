"""
节点执行器接口与内置实现
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from ..models.trigger import ExecutionResult
from ..models.workflow import NodeType, WorkflowNode


logger = logging.getLogger(__name__)


class NodeExecutor(ABC):
    """节点执行器基类

    ``context`` 是已渲染的绑定（见 core.rendering.resolve_bindings）。
    执行器通过返回值报告结果；抛出的异常由调度器按可恢复失败处理。
    """

    @abstractmethod
    async def execute(self, node: WorkflowNode, context: Dict[str, Any]) -> ExecutionResult:
        """执行节点"""
        pass


class ExecutorRegistry:
    """按节点类型注册执行器"""

    def __init__(self):
        self._executors: Dict[NodeType, NodeExecutor] = {}

    def register(self, node_type: Union[NodeType, str], executor: NodeExecutor):
        """注册执行器，同类型重复注册会覆盖"""
        node_type = NodeType(node_type)
        self._executors[node_type] = executor
        logger.info(f"Registered executor {type(executor).__name__} for '{node_type.value}' nodes")

    def get(self, node_type: Union[NodeType, str]) -> Optional[NodeExecutor]:
        return self._executors.get(NodeType(node_type))

    def registered_types(self) -> List[NodeType]:
        return list(self._executors)

    @classmethod
    def with_logging_executors(cls) -> "ExecutorRegistry":
        """所有节点类型都使用 LoggingExecutor（CLI 演练用）"""
        registry = cls()
        executor = LoggingExecutor()
        for node_type in NodeType:
            registry.register(node_type, executor)
        return registry

    @classmethod
    def default(cls) -> "ExecutorRegistry":
        """email / sms 只记录日志，delay 节点按时长推迟后继节点"""
        registry = cls.with_logging_executors()
        registry.register(NodeType.DELAY, DelayExecutor())
        return registry


class LoggingExecutor(NodeExecutor):
    """只记录日志、不投递的执行器"""

    async def execute(self, node: WorkflowNode, context: Dict[str, Any]) -> ExecutionResult:
        if node.node_type == NodeType.EMAIL:
            logger.info(
                f"[email] node '{node.name}' to={context.get('email_to')!r} "
                f"subject={context.get('email_subject')!r}"
            )
        elif node.node_type == NodeType.SMS:
            logger.info(f"[sms] node '{node.name}' to={context.get('sms_to')!r}")
        else:
            logger.info(f"[delay] node '{node.name}' delay_ms={context.get('delay_ms')}")

        message_id = None if node.node_type == NodeType.DELAY else f"log-{uuid4().hex[:12]}"
        return ExecutionResult.success(
            output={"node": node.name, "type": node.node_type.value},
            message_id=message_id
        )


class DelayExecutor(NodeExecutor):
    """延迟节点执行器

    不在执行器内等待，返回 ``resume_after``，由调度器把实例推迟到延迟结束后
    再执行后继节点。
    """

    async def execute(self, node: WorkflowNode, context: Dict[str, Any]) -> ExecutionResult:
        delay_ms = int(context.get("delay_ms") or 0)
        logger.info(f"[delay] node '{node.name}' resumes in {delay_ms}ms")
        return ExecutionResult.success(
            output={"node": node.name, "type": node.node_type.value, "delay_ms": delay_ms},
            resume_after=timedelta(milliseconds=delay_ms)
        )


@dataclass
class ExecutorCall:
    """一次执行器调用记录"""
    node_id: str
    node_name: str
    context: Dict[str, Any] = field(default_factory=dict)


class MockNodeExecutor(NodeExecutor):
    """模拟执行器（用于测试）

    按节点名称预置结果队列；队列元素可以是 ExecutionResult 或异常实例。
    队列耗尽或未预置时返回成功。
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.scripts: Dict[str, List[Union[ExecutionResult, Exception]]] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[ExecutorCall] = []

    def script(self, node_name: str, *outcomes: Union[ExecutionResult, Exception]):
        """为节点追加预置结果"""
        self.scripts.setdefault(node_name, []).extend(outcomes)

    def set_delay(self, node_name: str, seconds: float):
        self.delays[node_name] = seconds

    def calls_for(self, node_name: str) -> List[ExecutorCall]:
        return [call for call in self.calls if call.node_name == node_name]

    @property
    def call_order(self) -> List[str]:
        return [call.node_name for call in self.calls]

    async def execute(self, node: WorkflowNode, context: Dict[str, Any]) -> ExecutionResult:
        self.calls.append(ExecutorCall(node.id, node.name, dict(context)))

        delay = self.delays.get(node.name, self.delay)
        if delay:
            await asyncio.sleep(delay)

        queue = self.scripts.get(node.name)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        return ExecutionResult.success(output={"node": node.name})
