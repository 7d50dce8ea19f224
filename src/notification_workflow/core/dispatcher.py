"""
触发实例调度器实现
"""
import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..clock import Clock, utcnow
from ..config import DispatcherSettings
from ..exceptions import BindingRenderError, InvalidTransitionError
from ..integrations.executors import ExecutorRegistry, NodeExecutor
from ..models.trigger import ExecutionOutcome, ExecutionResult, StepExecutionLog, TriggerInstance
from ..models.workflow import NodeType, WorkflowGraph, WorkflowNode
from ..storage.repository import TriggerRepository, WorkflowRepository
from .rendering import resolve_bindings
from .state_machine import ExecutionStateMachine


logger = logging.getLogger(__name__)


class Dispatcher:
    """调度器

    轮询 ``available_at`` 已到期的 enqueued 实例，通过状态机认领后沿工作流图
    依次调用节点执行器。每个节点成功后持久化游标，重试从失败的节点继续。
    """

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        trigger_repository: TriggerRepository,
        state_machine: ExecutionStateMachine,
        executors: ExecutorRegistry,
        settings: Optional[DispatcherSettings] = None,
        clock: Clock = utcnow,
        name: str = "dispatcher"
    ):
        self.workflow_repository = workflow_repository
        self.trigger_repository = trigger_repository
        self.state_machine = state_machine
        self.executors = executors
        self.settings = settings or DispatcherSettings()
        self.clock = clock
        self.name = name
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def start(self):
        """启动轮询循环"""
        if self._loop_task:
            return

        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"Dispatcher '{self.name}' started "
            f"(poll every {self.settings.poll_interval}s, batch {self.settings.batch_size})"
        )

    async def stop(self):
        """停止轮询循环，等待当前批次结束"""
        if not self._loop_task:
            return

        self._stop_event.set()
        await self._loop_task
        self._loop_task = None
        logger.info(f"Dispatcher '{self.name}' stopped")

    @property
    def running(self) -> bool:
        return self._loop_task is not None

    async def poll_once(self) -> int:
        """
        处理一批就绪实例

        Returns:
            本调度器认领并处理的实例数
        """
        ready = await self.trigger_repository.list_ready(self.clock(), self.settings.batch_size)
        if not ready:
            return 0

        results = await asyncio.gather(
            *(self._claim_and_process(instance) for instance in ready),
            return_exceptions=True
        )

        processed = 0
        for instance, result in zip(ready, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Dispatcher '{self.name}' failed on trigger instance {instance.id}: {result}",
                    exc_info=result
                )
            elif result:
                processed += 1
        return processed

    async def run_until_idle(self, max_rounds: int = 1000) -> int:
        """反复轮询直到没有就绪实例，返回处理的实例总数"""
        total = 0
        for _ in range(max_rounds):
            processed = await self.poll_once()
            if processed == 0:
                break
            total += processed
        return total

    async def process(self, instance: TriggerInstance) -> TriggerInstance:
        """
        执行一个已认领（processing）的实例直到成功、失败或需要重试

        Returns:
            处理后的实例
        """
        workflow = await self.workflow_repository.get(instance.workflow_id)
        if workflow is None:
            return await self.state_machine.fail_fatal(
                instance, f"Workflow '{instance.workflow_id}' no longer exists"
            )

        node_id = instance.cursor_current_node_id or workflow.entry_node_id
        if node_id is None:
            return await self.state_machine.fail_fatal(instance, "Workflow has no entry node")

        while node_id is not None:
            node = workflow.get_node(node_id)
            if node is None:
                return await self.state_machine.fail_fatal(
                    instance, f"Node '{node_id}' does not exist in workflow {workflow.id}"
                )

            executor = self.executors.get(node.node_type)
            if executor is None:
                return await self.state_machine.fail_fatal(
                    instance, f"No executor registered for '{node.node_type.value}' nodes"
                )

            result = await self._execute_node(instance, node, executor)

            if result.outcome == ExecutionOutcome.RECOVERABLE_FAILURE:
                return await self.state_machine.fail_recoverable(
                    instance, f"Node '{node.name}': {result.error}"
                )
            if result.outcome == ExecutionOutcome.FATAL_FAILURE:
                return await self.state_machine.fail_fatal(
                    instance, f"Node '{node.name}': {result.error}"
                )

            next_node_id, error = self._next_node(workflow, node, result)
            if error:
                return await self.state_machine.fail_fatal(instance, f"Node '{node.name}': {error}")
            if next_node_id is None:
                return await self.state_machine.complete(instance)
            if result.resume_after is not None and result.resume_after > timedelta(0):
                return await self.state_machine.defer(instance, next_node_id, result.resume_after)

            instance = await self.state_machine.advance_cursor(instance, next_node_id)
            node_id = next_node_id

        return instance

    async def _claim_and_process(self, instance: TriggerInstance) -> bool:
        claimed = await self.state_machine.claim(instance)
        if claimed is None:
            return False

        try:
            await self.process(claimed)
        except InvalidTransitionError as e:
            # 实例被人工修改，放弃本次处理
            logger.warning(f"Dispatcher '{self.name}' lost trigger instance {claimed.id}: {e}")
        except Exception as e:
            # 其他异常按可恢复失败处理，实例不停留在 processing
            logger.error(
                f"Dispatcher '{self.name}' error while processing trigger instance {claimed.id}: {e}",
                exc_info=True
            )
            try:
                await self.state_machine.fail_recoverable(claimed, f"{type(e).__name__}: {e}")
            except InvalidTransitionError as lost:
                logger.warning(f"Dispatcher '{self.name}' lost trigger instance {claimed.id}: {lost}")
        return True

    async def _execute_node(
        self,
        instance: TriggerInstance,
        node: WorkflowNode,
        executor: NodeExecutor
    ) -> ExecutionResult:
        """渲染绑定、调用执行器并写入步骤日志"""
        started_at = self.clock()
        context: Dict[str, Any] = {}

        try:
            context = resolve_bindings(node, instance)
        except BindingRenderError as e:
            result = ExecutionResult.fatal(str(e))
        else:
            result = await self._invoke(executor, node, context)

        await self.trigger_repository.add_step_log(StepExecutionLog(
            workflow_id=instance.workflow_id,
            trigger_id=instance.id,
            node_id=node.id,
            attempt=instance.attempts,
            started_at=started_at,
            finished_at=self.clock(),
            success=result.ok,
            input_context=_dump(context),
            output_context=_dump(result.output),
            email_message_id=result.message_id if node.node_type == NodeType.EMAIL else None,
            sms_message_id=result.message_id if node.node_type == NodeType.SMS else None,
            error_message=result.error
        ))
        return result

    async def _invoke(
        self,
        executor: NodeExecutor,
        node: WorkflowNode,
        context: Dict[str, Any]
    ) -> ExecutionResult:
        timeout = self.settings.executor_timeout
        try:
            result = await asyncio.wait_for(executor.execute(node, context), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Executor for node '{node.name}' timed out after {timeout}s")
            return ExecutionResult.recoverable(f"executor timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"Executor for node '{node.name}' raised: {e}", exc_info=True)
            return ExecutionResult.recoverable(f"{type(e).__name__}: {e}")

        if not isinstance(result, ExecutionResult):
            return ExecutionResult.fatal(
                f"executor returned {type(result).__name__}, expected ExecutionResult"
            )
        return result

    @staticmethod
    def _next_node(
        workflow: WorkflowGraph,
        node: WorkflowNode,
        result: ExecutionResult
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        选择后继节点

        Returns:
            (后继节点ID, 错误信息)；没有出边时后继为 None
        """
        targets: List[str] = [edge.to_node_id for edge in workflow.out_edges(node.id)]

        if result.next_node_id is not None:
            if result.next_node_id not in targets:
                return None, f"selected node '{result.next_node_id}' is not a successor"
            return result.next_node_id, None

        if not targets:
            return None, None
        if len(targets) == 1:
            return targets[0], None
        return None, f"ambiguous branch: {len(targets)} successors and none selected"

    async def _poll_loop(self):
        """轮询主循环"""
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Dispatcher '{self.name}' poll error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.poll_interval)
            except asyncio.TimeoutError:
                pass


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)
