"""
绑定渲染测试
"""
import pytest

from notification_workflow.core.rendering import lookup, render, resolve_bindings
from notification_workflow.exceptions import BindingRenderError
from notification_workflow.models import (
    DelayBindings, EmailBindings, SmsBindings, TriggerInstance, WorkflowNode
)

from conftest import ORDER_PAYLOAD


def _instance(payload=ORDER_PAYLOAD):
    return TriggerInstance(workflow_id="wf-1", idempotency_key="order-42", payload=payload)


class TestRender:
    """占位符替换测试"""

    def test_lookup_nested(self):
        scope = {"payload": {"customer": {"emails": ["a@example.com", "b@example.com"]}}}
        assert lookup(scope, "payload.customer.emails.1") == "b@example.com"
        with pytest.raises(KeyError):
            lookup(scope, "payload.customer.phone")

    def test_render_values(self):
        scope = {"payload": {"id": 42, "tags": ["a"], "note": None}}
        assert render("#{{payload.id}} {{ payload.tags }}{{ payload.note }}", scope) == '#42 ["a"]'

    def test_render_without_placeholders(self):
        assert render("plain text", {}) == "plain text"

    def test_missing_value(self):
        with pytest.raises(BindingRenderError) as exc_info:
            render("Hi {{ payload.name }}", {"payload": {}}, node_id="n1")
        assert exc_info.value.expression == "payload.name"
        assert exc_info.value.node_id == "n1"


class TestResolveBindings:
    """执行上下文测试"""

    def test_email_context(self):
        node = WorkflowNode(
            workflow_id="wf-1",
            name="confirm",
            bindings=EmailBindings(
                email_to_template="{{ payload.email }}",
                email_subject_template="Order {{ payload.order_id }} (try {{ trigger.attempts }})",
                email_body_template="Thanks {{ payload.name }}"
            )
        )
        context = resolve_bindings(node, _instance())

        assert context["node_type"] == "email"
        assert context["payload"] == ORDER_PAYLOAD
        assert context["email_to"] == "ann@example.com"
        assert context["email_subject"] == "Order 42 (try 0)"
        assert context["email_body"] == "Thanks Ann"

    def test_optional_template_left_empty(self):
        node = WorkflowNode(
            workflow_id="wf-1",
            name="confirm",
            bindings=EmailBindings(email_to_template="x@example.com", email_body_template="hi")
        )
        assert resolve_bindings(node, _instance())["email_subject"] is None

    def test_delay_context(self):
        node = WorkflowNode(workflow_id="wf-1", name="wait", bindings=DelayBindings(delay_duration="PT1M"))
        context = resolve_bindings(node, _instance())
        assert context["delay_ms"] == 60_000
        assert context["delay_duration"] == "PT1M"

    def test_non_json_payload(self):
        node = WorkflowNode(
            workflow_id="wf-1",
            name="text",
            bindings=SmsBindings(sms_to_template="+15550100", sms_body_template="{{ payload }}")
        )
        context = resolve_bindings(node, _instance("just text"))
        assert context["sms_body"] == "just text"

    def test_workflow_and_trigger_scope(self):
        node = WorkflowNode(
            workflow_id="wf-1",
            name="text",
            bindings=SmsBindings(
                sms_to_template="+15550100",
                sms_body_template="{{ workflow.id }}/{{ trigger.idempotency_key }}"
            )
        )
        assert resolve_bindings(node, _instance())["sms_body"] == "wf-1/order-42"
