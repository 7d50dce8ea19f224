"""
触发实例状态机实现
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set, Union

from ..clock import Clock, utcnow
from ..config import RetryPolicy
from ..exceptions import InvalidTransitionError, NotFoundError, WorkflowValidationError
from ..integrations.event_bus import (
    EventBus, TRIGGER_CLAIMED, TRIGGER_COMPLETED, TRIGGER_DEFERRED, TRIGGER_FAILED,
    TRIGGER_RETRY_SCHEDULED
)
from ..models.trigger import TriggerInstance, TriggerStatus
from ..storage.repository import TriggerRepository


logger = logging.getLogger(__name__)


# 允许的状态转换
TRANSITIONS: Dict[TriggerStatus, Set[TriggerStatus]] = {
    TriggerStatus.ENQUEUED: {TriggerStatus.PROCESSING},
    TriggerStatus.PROCESSING: {
        TriggerStatus.COMPLETED,
        TriggerStatus.ENQUEUED,
        TriggerStatus.FAILED
    },
    TriggerStatus.COMPLETED: set(),
    TriggerStatus.FAILED: set(),
}


class ExecutionStateMachine:
    """触发实例生命周期

    ``enqueued -> processing -> completed | failed``，可恢复失败且仍有剩余次数时
    ``processing -> enqueued``。所有写入都是对仓储的比较并交换，
    因此多个调度器共享存储时同一实例最多只被一个调度器处理。
    """

    def __init__(
        self,
        repository: TriggerRepository,
        retry_policy: Optional[RetryPolicy] = None,
        event_bus: Optional[EventBus] = None,
        clock: Clock = utcnow,
        rng: Optional[random.Random] = None
    ):
        self.repository = repository
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_bus = event_bus or EventBus()
        self.clock = clock
        self.rng = rng

    @staticmethod
    def can_transition(current: TriggerStatus, target: TriggerStatus) -> bool:
        return target in TRANSITIONS[current]

    def backoff(self, attempts: int) -> timedelta:
        """第 ``attempts`` 次失败后的等待时间"""
        return self.retry_policy.compute_delay(attempts, self.rng)

    async def claim(self, instance: TriggerInstance) -> Optional[TriggerInstance]:
        """
        认领实例：``enqueued -> processing``，attempts 加一

        比较条件包含 ``available_at <= now``，人工推迟的实例不会被按旧快照认领。

        Returns:
            认领成功后的实例；实例未就绪或已被其他调度器认领时返回 None
        """
        now = self.clock()
        if not instance.is_ready(now):
            return None

        claimed = await self.repository.compare_and_set(
            instance.id,
            TriggerStatus.ENQUEUED,
            {"status": TriggerStatus.PROCESSING, "attempts": instance.attempts + 1},
            expected_attempts=instance.attempts,
            available_before=now
        )
        if claimed is None:
            logger.debug(f"Trigger instance {instance.id} already claimed elsewhere")
            return None

        logger.info(f"Claimed trigger instance {claimed.id} (attempt {claimed.attempts})")
        await self._publish(TRIGGER_CLAIMED, claimed)
        return claimed

    async def advance_cursor(self, instance: TriggerInstance, node_id: str) -> TriggerInstance:
        """记录下一次执行从哪个节点继续"""
        return await self._apply(
            instance, TriggerStatus.PROCESSING, {"cursor_current_node_id": node_id}
        )

    async def defer(
        self,
        instance: TriggerInstance,
        node_id: str,
        resume_after: timedelta
    ) -> TriggerInstance:
        """
        延迟节点完成后让出实例：``processing -> enqueued``

        游标指向下一个节点，``available_at`` 推迟到延迟结束。
        尝试次数清零，后续节点重新获得完整的重试次数。
        """
        available_at = self.clock() + resume_after
        deferred = await self._apply(
            instance,
            TriggerStatus.ENQUEUED,
            {
                "status": TriggerStatus.ENQUEUED,
                "cursor_current_node_id": node_id,
                "available_at": available_at,
                "attempts": 0,
                "last_error": None
            }
        )
        logger.info(
            f"Trigger instance {deferred.id} deferred until {available_at.isoformat()}, "
            f"resuming at node {node_id}"
        )
        await self._publish(TRIGGER_DEFERRED, deferred, available_at=available_at.isoformat())
        return deferred

    async def complete(self, instance: TriggerInstance) -> TriggerInstance:
        """``processing -> completed``"""
        completed = await self._apply(
            instance,
            TriggerStatus.COMPLETED,
            {"status": TriggerStatus.COMPLETED, "last_error": None}
        )
        logger.info(f"Trigger instance {completed.id} completed after {completed.attempts} attempt(s)")
        await self._publish(TRIGGER_COMPLETED, completed)
        return completed

    async def fail_recoverable(self, instance: TriggerInstance, error: str) -> TriggerInstance:
        """
        可恢复失败：次数未用尽时重新排队并退避，否则终止为 failed
        """
        if self.retry_policy.exhausted(instance.attempts):
            failed = await self._apply(
                instance,
                TriggerStatus.FAILED,
                {"status": TriggerStatus.FAILED, "last_error": error}
            )
            logger.warning(
                f"Trigger instance {failed.id} failed after {failed.attempts} attempt(s): {error}"
            )
            await self._publish(TRIGGER_FAILED, failed, reason="retries_exhausted")
            return failed

        available_at = self.clock() + self.backoff(instance.attempts)
        requeued = await self._apply(
            instance,
            TriggerStatus.ENQUEUED,
            {"status": TriggerStatus.ENQUEUED, "available_at": available_at, "last_error": error}
        )
        logger.warning(
            f"Trigger instance {requeued.id} attempt {requeued.attempts} failed, "
            f"retrying at {available_at.isoformat()}: {error}"
        )
        await self._publish(
            TRIGGER_RETRY_SCHEDULED, requeued, available_at=available_at.isoformat()
        )
        return requeued

    async def fail_fatal(self, instance: TriggerInstance, error: str) -> TriggerInstance:
        """不可恢复失败：``processing -> failed``"""
        failed = await self._apply(
            instance,
            TriggerStatus.FAILED,
            {"status": TriggerStatus.FAILED, "last_error": error}
        )
        logger.error(f"Trigger instance {failed.id} failed fatally: {error}")
        await self._publish(TRIGGER_FAILED, failed, reason="fatal")
        return failed

    async def update(
        self,
        instance_id: str,
        status: Union[TriggerStatus, str, None] = None,
        attempts: Optional[int] = None,
        available_at: Optional[datetime] = None,
        payload: Optional[str] = None
    ) -> TriggerInstance:
        """
        人工干预修改实例

        终态实例不可修改；状态变化必须在转换表内，同状态修改（例如重新安排
        enqueued 实例的执行时间）允许。

        Raises:
            NotFoundError: 实例不存在
            InvalidTransitionError: 非法转换或并发修改
            WorkflowValidationError: 参数非法
        """
        instance = await self.repository.get(instance_id)
        if instance is None:
            raise NotFoundError("TriggerInstance", instance_id)

        current = instance.status
        try:
            target = TriggerStatus(status) if status is not None else current
        except ValueError:
            raise WorkflowValidationError(f"Unknown trigger status: {status!r}")

        if current.is_terminal:
            raise InvalidTransitionError(current.value, target.value, "instance is terminal")
        if target != current and not self.can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)
        if attempts is not None and attempts < 0:
            raise WorkflowValidationError("attempts must be >= 0")
        if payload is not None and not isinstance(payload, str):
            raise WorkflowValidationError("payload must be a string")

        changes: Dict[str, Any] = {"status": target}
        if attempts is not None:
            changes["attempts"] = attempts
        elif current == TriggerStatus.ENQUEUED and target == TriggerStatus.PROCESSING:
            changes["attempts"] = instance.attempts + 1

        if available_at is not None:
            changes["available_at"] = available_at
        elif current == TriggerStatus.PROCESSING and target == TriggerStatus.ENQUEUED:
            changes["available_at"] = self.clock() + self.backoff(instance.attempts)

        if payload is not None:
            changes["payload"] = payload

        updated = await self.repository.compare_and_set(
            instance_id, current, changes, expected_attempts=instance.attempts
        )
        if updated is None:
            raise InvalidTransitionError(
                current.value, target.value, "instance was modified concurrently"
            )

        logger.info(
            f"Trigger instance {instance_id} updated: {current.value} -> {target.value}, "
            f"attempts={updated.attempts}"
        )
        return updated

    async def _apply(
        self,
        instance: TriggerInstance,
        target: TriggerStatus,
        changes: Dict[str, Any]
    ) -> TriggerInstance:
        """以 processing 为前提条件写入，失败说明实例已被他人修改"""
        updated = await self.repository.compare_and_set(
            instance.id,
            TriggerStatus.PROCESSING,
            changes,
            expected_attempts=instance.attempts
        )
        if updated is None:
            raise InvalidTransitionError(
                instance.status.value, target.value,
                f"instance {instance.id} is no longer held by this dispatcher"
            )
        return updated

    async def _publish(self, topic: str, instance: TriggerInstance, **extra):
        await self.event_bus.publish(topic, {
            "instance_id": instance.id,
            "workflow_id": instance.workflow_id,
            "status": instance.status.value,
            "attempts": instance.attempts,
            "last_error": instance.last_error,
            **extra
        })
