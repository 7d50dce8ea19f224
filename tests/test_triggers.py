"""
触发实例服务测试
"""
import asyncio
import json

import pytest

from notification_workflow.exceptions import NotFoundError, WorkflowValidationError
from notification_workflow.integrations import TRIGGER_SUBMITTED
from notification_workflow.models import TriggerStatus

from conftest import ORDER_PAYLOAD, order_definition


class TestSubmit:
    """提交测试"""

    @pytest.mark.asyncio
    async def test_submit_creates_enqueued_instance(self, engine, order_workflow, clock):
        instance = await engine.submit(order_workflow.id, "order-42", ORDER_PAYLOAD, principal="shop")

        assert instance.status == TriggerStatus.ENQUEUED
        assert instance.attempts == 0
        assert instance.available_at == clock.now
        assert instance.cursor_current_node_id == order_workflow.entry_node_id
        assert instance.submitted_by == "shop"
        assert instance.payload == ORDER_PAYLOAD

    @pytest.mark.asyncio
    async def test_resubmission_returns_original(self, engine, order_workflow, clock):
        first = await engine.submit(order_workflow.id, "order-42", ORDER_PAYLOAD)
        second = await engine.submit(order_workflow.id, "order-42", '{"different": true}')

        assert second.id == first.id
        assert second.payload == ORDER_PAYLOAD
        page = await engine.triggers.search(workflow_id=order_workflow.id)
        assert page.pagination["records"] == 1

    @pytest.mark.asyncio
    async def test_same_key_on_other_workflow_is_independent(self, engine, order_workflow):
        other = await engine.load_workflow(order_definition(code="other_flow"))
        first = await engine.submit(order_workflow.id, "order-42", ORDER_PAYLOAD)
        second = await engine.submit(other.id, "order-42", ORDER_PAYLOAD)
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_concurrent_submissions_share_one_instance(self, engine, order_workflow):
        instances = await asyncio.gather(*(
            engine.submit(order_workflow.id, "order-42", ORDER_PAYLOAD) for _ in range(10)
        ))
        assert len({instance.id for instance in instances}) == 1
        page = await engine.triggers.search(workflow_id=order_workflow.id)
        assert page.pagination["records"] == 1

    @pytest.mark.asyncio
    async def test_submitted_event_published_once(self, engine, order_workflow):
        received = []
        await engine.event_bus.subscribe(TRIGGER_SUBMITTED, received.append)

        await engine.submit(order_workflow.id, "order-42", ORDER_PAYLOAD)
        await engine.submit(order_workflow.id, "order-42", ORDER_PAYLOAD)
        assert len(received) == 1
        assert received[0].payload["idempotency_key"] == "order-42"

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError):
            await engine.submit("missing", "order-42", ORDER_PAYLOAD)

    @pytest.mark.asyncio
    async def test_inactive_workflow(self, engine):
        workflow = await engine.load_workflow(order_definition(activate=False))
        with pytest.raises(WorkflowValidationError):
            await engine.submit(workflow.id, "order-42", ORDER_PAYLOAD)

    @pytest.mark.asyncio
    async def test_empty_idempotency_key(self, engine, order_workflow):
        with pytest.raises(WorkflowValidationError):
            await engine.submit(order_workflow.id, "  ", ORDER_PAYLOAD)

    @pytest.mark.asyncio
    async def test_non_string_payload_is_json_encoded(self, engine, order_workflow):
        instance = await engine.submit(order_workflow.id, "order-7", {"order_id": "7"})
        assert json.loads(instance.payload) == {"order_id": "7"}

    @pytest.mark.asyncio
    async def test_payload_schema(self, engine):
        schema = {
            "type": "object",
            "required": ["order_id", "email"],
            "properties": {"order_id": {"type": "string"}, "email": {"type": "string"}}
        }
        workflow = await engine.load_workflow(order_definition(payload_schema=schema))

        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.submit(workflow.id, "bad", '{"order_id": 42}')
        assert any("email" in error for error in exc_info.value.errors)

        with pytest.raises(WorkflowValidationError):
            await engine.submit(workflow.id, "not-json", "plain text")

        instance = await engine.submit(workflow.id, "good", ORDER_PAYLOAD)
        assert instance.status == TriggerStatus.ENQUEUED


class TestQueries:
    """查询测试"""

    @pytest.mark.asyncio
    async def test_get_missing(self, engine):
        with pytest.raises(NotFoundError):
            await engine.triggers.get("missing")

    @pytest.mark.asyncio
    async def test_search_pagination_and_status(self, engine, order_workflow, mock_executor):
        for index in range(5):
            await engine.submit(order_workflow.id, f"order-{index}", ORDER_PAYLOAD)

        page = await engine.triggers.search(workflow_id=order_workflow.id, page=2, limit=2)
        assert len(page.data) == 2
        assert page.pagination == {"current": 2, "limit": 2, "records": 5, "pages": 3}

        await engine.dispatcher.run_until_idle()
        completed = await engine.triggers.search(status="completed")
        assert completed.pagination["records"] == 5
        enqueued = await engine.triggers.search(status=TriggerStatus.ENQUEUED)
        assert enqueued.data == []

    @pytest.mark.asyncio
    async def test_search_unknown_status(self, engine):
        with pytest.raises(WorkflowValidationError):
            await engine.triggers.search(status="paused")

    @pytest.mark.asyncio
    async def test_step_logs_for_missing_instance(self, engine):
        with pytest.raises(NotFoundError):
            await engine.triggers.step_logs("missing")
