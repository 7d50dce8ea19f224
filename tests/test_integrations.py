"""
集成组件测试：验证器、事件总线、执行器注册表
"""
from datetime import timedelta

import pytest

from notification_workflow.exceptions import WorkflowValidationError
from notification_workflow.integrations import (
    DelayExecutor, EventBus, ExecutorRegistry, LoggingExecutor, MockNodeExecutor, SchemaValidator
)
from notification_workflow.models import (
    DelayBindings, EmailBindings, ExecutionOutcome, ExecutionResult, NodeType, SmsBindings,
    WorkflowNode
)


ORDER_SCHEMA = {
    "type": "object",
    "required": ["order_id"],
    "properties": {"order_id": {"type": "string"}}
}


class TestSchemaValidator:
    """验证器测试"""

    def test_validate_bindings(self):
        validator = SchemaValidator()
        bindings = validator.validate_bindings("sms", {"sms_to_template": "+1", "sms_body_template": "hi"})
        assert isinstance(bindings, SmsBindings)

    def test_binding_errors_name_the_field(self):
        validator = SchemaValidator()
        with pytest.raises(WorkflowValidationError) as exc_info:
            validator.validate_bindings("email", {"email_to_template": "x"})
        assert exc_info.value.errors[0].startswith("email_body_template:")

    def test_unknown_node_type(self):
        with pytest.raises(WorkflowValidationError):
            SchemaValidator().validate_bindings("push", {})

    def test_validate_payload(self):
        validator = SchemaValidator()
        assert validator.validate_payload('{"order_id": "42"}', ORDER_SCHEMA) == []
        assert validator.validate_payload('{"order_id": 42}', ORDER_SCHEMA) == [
            "order_id: 42 is not of type 'string'"
        ]
        assert validator.validate_payload("{}", ORDER_SCHEMA)[0].startswith("root:")
        assert validator.validate_payload("not json", ORDER_SCHEMA)[0].startswith(
            "root: payload is not valid JSON"
        )

    def test_validators_are_cached(self):
        validator = SchemaValidator()
        validator.validate_payload("{}", ORDER_SCHEMA)
        validator.validate_payload("{}", dict(ORDER_SCHEMA))
        assert len(validator.validators_cache) == 1

    def test_check_schema(self):
        validator = SchemaValidator()
        validator.check_schema(ORDER_SCHEMA)
        with pytest.raises(WorkflowValidationError):
            validator.check_schema({"type": 5})
        with pytest.raises(WorkflowValidationError):
            validator.check_schema(["not", "a", "schema"])


class TestEventBus:
    """事件总线测试"""

    @pytest.mark.asyncio
    async def test_publish_to_sync_and_async_handlers(self):
        bus = EventBus()
        received = []

        async def async_handler(event):
            received.append(("async", event.payload))

        await bus.subscribe("trigger.completed", received.append)
        await bus.subscribe("trigger.completed", async_handler)
        await bus.publish("trigger.completed", {"instance_id": "t1"})

        assert len(received) == 2
        assert ("async", {"instance_id": "t1"}) in received

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_publish(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        await bus.subscribe("trigger.failed", broken)
        await bus.subscribe("trigger.failed", received.append)
        await bus.publish("trigger.failed", {})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []
        await bus.subscribe("trigger.claimed", received.append)
        await bus.unsubscribe("trigger.claimed", received.append)
        await bus.publish("trigger.claimed", {})

        assert received == []
        assert "trigger.claimed" not in bus.subscribers


class TestExecutors:
    """执行器测试"""

    def _node(self):
        return WorkflowNode(
            workflow_id="wf-1",
            name="confirm",
            bindings=EmailBindings(email_to_template="a@example.com", email_body_template="hi")
        )

    def test_registry(self):
        registry = ExecutorRegistry()
        executor = MockNodeExecutor()
        registry.register("email", executor)

        assert registry.get(NodeType.EMAIL) is executor
        assert registry.get("sms") is None
        assert registry.registered_types() == [NodeType.EMAIL]
        with pytest.raises(ValueError):
            registry.register("push", executor)

    @pytest.mark.asyncio
    async def test_logging_executor(self):
        result = await LoggingExecutor().execute(self._node(), {"email_to": "a@example.com"})
        assert result.ok
        assert result.message_id.startswith("log-")

    @pytest.mark.asyncio
    async def test_mock_executor_script(self):
        executor = MockNodeExecutor()
        executor.script("confirm", ExecutionResult.recoverable("down"), TimeoutError("slow"))

        first = await executor.execute(self._node(), {})
        assert first.outcome == ExecutionOutcome.RECOVERABLE_FAILURE
        with pytest.raises(TimeoutError):
            await executor.execute(self._node(), {})
        assert (await executor.execute(self._node(), {})).ok
        assert executor.call_order == ["confirm"] * 3

    @pytest.mark.asyncio
    async def test_delay_executor_returns_resume_after(self):
        node = WorkflowNode(workflow_id="wf-1", name="wait", bindings=DelayBindings(delay_duration="PT2H"))
        result = await DelayExecutor().execute(node, {"delay_ms": 7_200_000})

        assert result.ok
        assert result.resume_after == timedelta(hours=2)
        assert result.message_id is None

    def test_default_registry(self):
        registry = ExecutorRegistry.default()
        assert isinstance(registry.get("delay"), DelayExecutor)
        assert isinstance(registry.get("email"), LoggingExecutor)
        assert isinstance(registry.get("sms"), LoggingExecutor)
