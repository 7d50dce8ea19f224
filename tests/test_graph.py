"""
工作流图服务测试
"""
import asyncio

import pytest

from notification_workflow.exceptions import (
    CycleDetectedError, DuplicateEdgeError, NotFoundError,
    UnknownNodeError, WorkflowValidationError
)
from notification_workflow.integrations import WORKFLOW_ACTIVATED
from notification_workflow.models import DelayBindings, EmailBindings


EMAIL_SPEC = {
    "type": "email",
    "name": "Welcome",
    "email_to_template": "{{ payload.email }}",
    "email_body_template": "Hello"
}


async def _chain(graphs, code="wf", count=3):
    workflow = await graphs.create_workflow(code, "Test workflow")
    nodes = []
    for index in range(count):
        nodes.append(await graphs.add_node(workflow.id, {
            "type": "delay", "name": f"n{index}", "delay_ms": 1000
        }))
    for first, second in zip(nodes, nodes[1:]):
        await graphs.add_edge(workflow.id, first.id, second.id)
    await graphs.set_entry_node(workflow.id, nodes[0].id)
    return workflow, nodes


class TestWorkflowCreation:
    """工作流创建与版本测试"""

    @pytest.mark.asyncio
    async def test_create_workflow_starts_inactive(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome", principal="alice")
        assert workflow.version == 1
        assert workflow.is_active is False
        assert workflow.entry_node_id is None
        assert workflow.created_by == "alice"

    @pytest.mark.asyncio
    async def test_versions_increase(self, engine):
        first = await engine.graphs.create_workflow("welcome", "Welcome")
        second = await engine.graphs.create_workflow("welcome", "Welcome v2")
        assert (first.version, second.version) == (1, 2)
        latest = await engine.graphs.latest("welcome")
        assert latest.id == second.id

    @pytest.mark.asyncio
    async def test_duplicate_version_rejected(self, engine):
        await engine.graphs.create_workflow("welcome", "Welcome", version=3)
        with pytest.raises(WorkflowValidationError):
            await engine.graphs.create_workflow("welcome", "Welcome", version=3)

    @pytest.mark.asyncio
    async def test_create_workflow_validates_fields(self, engine):
        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.graphs.create_workflow("", " ", version=0)
        assert len(exc_info.value.errors) == 3

    @pytest.mark.asyncio
    async def test_invalid_payload_schema(self, engine):
        with pytest.raises(WorkflowValidationError):
            await engine.graphs.create_workflow("welcome", "Welcome", payload_schema={"type": "nonsense"})

    @pytest.mark.asyncio
    async def test_latest_unknown_code(self, engine):
        with pytest.raises(NotFoundError):
            await engine.graphs.latest("missing")


class TestNodes:
    """节点测试"""

    @pytest.mark.asyncio
    async def test_add_email_node(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome")
        node = await engine.graphs.add_node(workflow.id, EMAIL_SPEC)
        assert isinstance(node.bindings, EmailBindings)
        assert (await engine.graphs.get_node(node.id)).name == "Welcome"

    @pytest.mark.asyncio
    async def test_bindings_nested_or_flat(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome")
        node = await engine.graphs.add_node(workflow.id, {
            "type": "delay", "name": "wait", "bindings": {"delay_duration": "PT2H"}
        })
        assert node.bindings == DelayBindings(delay_duration="PT2H")
        assert node.bindings.delay_ms == 7_200_000

    @pytest.mark.asyncio
    async def test_missing_required_binding(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome")
        spec = {k: v for k, v in EMAIL_SPEC.items() if k != "email_body_template"}
        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.graphs.add_node(workflow.id, spec)
        assert any("email_body_template" in e for e in exc_info.value.errors)
        assert await engine.graphs.list_nodes(workflow.id) == []

    @pytest.mark.asyncio
    async def test_bindings_of_another_type_rejected(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome")
        with pytest.raises(WorkflowValidationError):
            await engine.graphs.add_node(workflow.id, {**EMAIL_SPEC, "sms_body_template": "hi"})

    @pytest.mark.asyncio
    async def test_unknown_type_and_field(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome")
        with pytest.raises(WorkflowValidationError):
            await engine.graphs.add_node(workflow.id, {"type": "push", "name": "x"})
        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.graphs.add_node(workflow.id, {**EMAIL_SPEC, "priority": 1})
        assert exc_info.value.errors == ["priority: unknown field"]

    @pytest.mark.asyncio
    async def test_add_node_to_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError):
            await engine.graphs.add_node("missing", EMAIL_SPEC)

    @pytest.mark.asyncio
    async def test_node_from_template(self, engine):
        await engine.templates.register({
            "code": "welcome_email",
            "name": "Welcome email",
            "type": "email",
            "default_bindings": {
                "email_to_template": "{{ payload.email }}",
                "email_body_template": "Welcome!"
            }
        })
        workflow = await engine.graphs.create_workflow("welcome", "Welcome")
        node = await engine.graphs.add_node(workflow.id, {
            "template": "welcome_email",
            "email_subject_template": "Hi"
        })
        assert node.name == "Welcome email"
        assert node.template_code == "welcome_email"
        assert node.bindings.email_subject_template == "Hi"
        assert node.bindings.email_body_template == "Welcome!"


class TestEdges:
    """边与无环约束测试"""

    @pytest.mark.asyncio
    async def test_cycle_rejected(self, engine):
        workflow, (a, b, c) = await _chain(engine.graphs)
        with pytest.raises(CycleDetectedError):
            await engine.graphs.add_edge(workflow.id, c.id, a.id)
        assert len(await engine.graphs.list_edges(workflow.id)) == 2

    @pytest.mark.asyncio
    async def test_self_loop_rejected(self, engine):
        workflow, (a, _, _) = await _chain(engine.graphs)
        with pytest.raises(CycleDetectedError):
            await engine.graphs.add_edge(workflow.id, a.id, a.id)

    @pytest.mark.asyncio
    async def test_duplicate_edge_rejected(self, engine):
        workflow, (a, b, _) = await _chain(engine.graphs)
        with pytest.raises(DuplicateEdgeError):
            await engine.graphs.add_edge(workflow.id, a.id, b.id)

    @pytest.mark.asyncio
    async def test_node_of_other_workflow_rejected(self, engine):
        workflow, (a, _, _) = await _chain(engine.graphs, code="one")
        _, (other, _, _) = await _chain(engine.graphs, code="two")
        with pytest.raises(UnknownNodeError):
            await engine.graphs.add_edge(workflow.id, a.id, other.id)

    @pytest.mark.asyncio
    async def test_multiple_out_edges_allowed(self, engine):
        workflow, (a, b, c) = await _chain(engine.graphs)
        edge = await engine.graphs.add_edge(workflow.id, a.id, c.id)
        assert (await engine.graphs.get_edge(edge.id)).to_node_id == c.id

    @pytest.mark.asyncio
    async def test_concurrent_edges_cannot_form_cycle(self, engine):
        workflow = await engine.graphs.create_workflow("race", "Race")
        a = await engine.graphs.add_node(workflow.id, {"type": "delay", "name": "a", "delay_ms": 1})
        b = await engine.graphs.add_node(workflow.id, {"type": "delay", "name": "b", "delay_ms": 1})

        results = await asyncio.gather(
            engine.graphs.add_edge(workflow.id, a.id, b.id),
            engine.graphs.add_edge(workflow.id, b.id, a.id),
            return_exceptions=True
        )

        assert sum(isinstance(r, CycleDetectedError) for r in results) == 1
        assert len(await engine.graphs.list_edges(workflow.id)) == 1


class TestValidation:
    """校验与激活测试"""

    @pytest.mark.asyncio
    async def test_forward_reference_entry(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome", entry_node_id="start")
        report = await engine.graphs.validate(workflow.id)
        assert not report.ok

        await engine.graphs.add_node(workflow.id, {**EMAIL_SPEC, "id": "start"})
        report = await engine.graphs.validate(workflow.id)
        assert report.ok
        assert report.unreachable == []

    @pytest.mark.asyncio
    async def test_unreachable_nodes_reported(self, engine):
        workflow, nodes = await _chain(engine.graphs)
        orphan_one = await engine.graphs.add_node(workflow.id, {"type": "delay", "name": "x", "delay_ms": 1})
        orphan_two = await engine.graphs.add_node(workflow.id, {"type": "delay", "name": "y", "delay_ms": 1})

        report = await engine.graphs.validate(workflow.id)
        assert not report.ok
        assert report.unreachable == [orphan_one.id, orphan_two.id]
        assert len(report.errors) == 2
        assert len(await engine.graphs.list_nodes(workflow.id)) == 5

    @pytest.mark.asyncio
    async def test_activation_requires_clean_validation(self, engine):
        workflow = await engine.graphs.create_workflow("welcome", "Welcome")
        await engine.graphs.add_node(workflow.id, EMAIL_SPEC)
        with pytest.raises(WorkflowValidationError):
            await engine.graphs.activate(workflow.id)

    @pytest.mark.asyncio
    async def test_activate_and_deactivate(self, engine):
        received = []
        await engine.event_bus.subscribe(WORKFLOW_ACTIVATED, received.append)

        workflow, _ = await _chain(engine.graphs)
        activated = await engine.graphs.activate(workflow.id)
        assert activated.is_active
        assert received[0].payload["workflow_id"] == workflow.id

        deactivated = await engine.graphs.deactivate(workflow.id)
        assert not deactivated.is_active

    @pytest.mark.asyncio
    async def test_set_entry_node_must_belong(self, engine):
        workflow, _ = await _chain(engine.graphs, code="one")
        _, (other, _, _) = await _chain(engine.graphs, code="two")
        with pytest.raises(UnknownNodeError):
            await engine.graphs.set_entry_node(workflow.id, other.id)


class TestImmutability:
    """被引用工作流不可修改"""

    @pytest.mark.asyncio
    async def test_referenced_workflow_is_frozen(self, engine, order_workflow):
        await engine.submit(order_workflow.id, "order-1", "{}")
        nodes = await engine.graphs.list_nodes(order_workflow.id)

        with pytest.raises(WorkflowValidationError):
            await engine.graphs.add_node(order_workflow.id, EMAIL_SPEC)
        with pytest.raises(WorkflowValidationError):
            await engine.graphs.add_edge(order_workflow.id, nodes[0].id, nodes[2].id)
        with pytest.raises(WorkflowValidationError):
            await engine.graphs.set_entry_node(order_workflow.id, nodes[1].id)

    @pytest.mark.asyncio
    async def test_new_version_copies_graph(self, engine, order_workflow):
        await engine.submit(order_workflow.id, "order-1", "{}")

        copy = await engine.graphs.new_version(order_workflow.id, principal="bob")
        assert copy.version == order_workflow.version + 1
        assert copy.is_active is False
        assert len(copy.nodes) == 3
        assert len(copy.edges) == 2
        assert copy.entry_node_id in copy.nodes
        assert not set(copy.nodes) & set(order_workflow.nodes)
        assert (await engine.graphs.validate(copy.id)).ok

        await engine.graphs.add_node(copy.id, EMAIL_SPEC)

    @pytest.mark.asyncio
    async def test_discard_unreferenced_version(self, engine):
        workflow, nodes = await _chain(engine.graphs)

        assert await engine.graphs.discard(workflow.id) is True
        assert await engine.graphs.workflow_repository.get_by_code("wf") is None
        assert await engine.graphs.workflow_repository.get_node(nodes[0].id) is None
        with pytest.raises(NotFoundError):
            await engine.graphs.get_workflow(workflow.id)

    @pytest.mark.asyncio
    async def test_referenced_workflow_cannot_be_discarded(self, engine, order_workflow):
        await engine.submit(order_workflow.id, "order-1", "{}")

        with pytest.raises(WorkflowValidationError):
            await engine.graphs.discard(order_workflow.id)
        assert (await engine.graphs.get_workflow(order_workflow.id)).is_active
