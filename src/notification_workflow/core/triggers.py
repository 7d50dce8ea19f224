"""
触发实例服务
"""
import json
import logging
from typing import Any, List, Optional, Union

from ..clock import Clock, utcnow
from ..exceptions import NotFoundError, WorkflowValidationError
from ..integrations.event_bus import EventBus, TRIGGER_SUBMITTED
from ..integrations.validators import SchemaValidator
from ..models.page import Page, page_window
from ..models.trigger import StepExecutionLog, TriggerInstance, TriggerStatus
from ..storage.repository import TriggerRepository, WorkflowRepository


logger = logging.getLogger(__name__)


class TriggerService:
    """提交与查询触发实例

    同一工作流内幂等键唯一：重复提交返回已有实例，不做任何修改。
    """

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        trigger_repository: TriggerRepository,
        validator: Optional[SchemaValidator] = None,
        event_bus: Optional[EventBus] = None,
        clock: Clock = utcnow
    ):
        self.workflow_repository = workflow_repository
        self.trigger_repository = trigger_repository
        self.validator = validator or SchemaValidator()
        self.event_bus = event_bus or EventBus()
        self.clock = clock

    async def submit(
        self,
        workflow_id: str,
        idempotency_key: str,
        payload: Union[str, Any],
        principal: Optional[str] = None
    ) -> TriggerInstance:
        """
        提交触发实例

        Args:
            workflow_id: 工作流ID
            idempotency_key: 幂等键
            payload: 载荷字符串；非字符串值按 JSON 编码
            principal: 提交者

        Returns:
            TriggerInstance: 新建或已存在的实例
        """
        if not idempotency_key or not str(idempotency_key).strip():
            raise WorkflowValidationError("idempotency_key must not be empty")
        if payload is None:
            raise WorkflowValidationError("payload is required")
        if not isinstance(payload, str):
            payload = json.dumps(payload, ensure_ascii=False, sort_keys=True)

        workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)

        existing = await self.trigger_repository.get_by_key(workflow_id, idempotency_key)
        if existing is not None:
            logger.info(
                f"Duplicate submission for key '{idempotency_key}' on workflow {workflow_id}, "
                f"returning instance {existing.id}"
            )
            return existing

        if not workflow.is_active:
            raise WorkflowValidationError(
                f"Workflow '{workflow.code}' v{workflow.version} is not active"
            )

        if workflow.payload_schema:
            errors = self.validator.validate_payload(payload, workflow.payload_schema)
            if errors:
                raise WorkflowValidationError("Payload does not match the workflow schema", errors)

        now = self.clock()
        instance = TriggerInstance(
            workflow_id=workflow_id,
            idempotency_key=idempotency_key,
            payload=payload,
            status=TriggerStatus.ENQUEUED,
            attempts=0,
            available_at=now,
            cursor_current_node_id=workflow.entry_node_id,
            submitted_by=principal,
            created_at=now,
            updated_at=now
        )

        stored, created = await self.trigger_repository.create_if_absent(instance)
        if created:
            logger.info(
                f"Enqueued trigger instance {stored.id} for workflow {workflow_id} "
                f"(key '{idempotency_key}')"
            )
            await self.event_bus.publish(TRIGGER_SUBMITTED, {
                "instance_id": stored.id,
                "workflow_id": workflow_id,
                "idempotency_key": idempotency_key
            })
        return stored

    async def get(self, instance_id: str) -> TriggerInstance:
        instance = await self.trigger_repository.get(instance_id)
        if instance is None:
            raise NotFoundError("TriggerInstance", instance_id)
        return instance

    async def search(
        self,
        workflow_id: Optional[str] = None,
        status: Union[TriggerStatus, str, None] = None,
        page: int = 1,
        limit: int = 20
    ) -> Page[TriggerInstance]:
        """分页查询，按创建时间倒序"""
        offset, limit = page_window(page, limit)
        if status is not None:
            try:
                status = TriggerStatus(status)
            except ValueError:
                raise WorkflowValidationError(f"Unknown trigger status: {status!r}")

        instances, total = await self.trigger_repository.search(
            workflow_id=workflow_id,
            status=status,
            offset=offset,
            limit=limit
        )
        return Page(data=instances, current=page, limit=limit, records=total)

    async def step_logs(self, instance_id: str) -> List[StepExecutionLog]:
        """实例的执行步骤日志，按开始时间排序"""
        await self.get(instance_id)
        return await self.trigger_repository.list_step_logs(instance_id)
