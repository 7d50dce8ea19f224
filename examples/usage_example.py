"""
通知工作流引擎使用示例
"""
import asyncio
import logging
from datetime import timedelta
from pathlib import Path

from notification_workflow.clock import utcnow
from notification_workflow import EngineSettings, ExecutionResult, RetryPolicy, WorkflowEngine
from notification_workflow.integrations import ExecutorRegistry, LoggingExecutor, MockNodeExecutor
from notification_workflow.models import NodeType


# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

EXAMPLES_DIR = Path(__file__).parent


class ManualClock:
    """可手动推进的时钟，用来演示退避后的重试"""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta: timedelta):
        self.now += delta


async def example_order_followup():
    """从 YAML 定义创建工作流并执行一次"""
    print("\n=== 订单跟进工作流 ===")

    engine = WorkflowEngine.in_memory(executors=ExecutorRegistry.with_logging_executors())
    workflow = await engine.load_workflow(EXAMPLES_DIR / "order_followup.yaml", principal="ops")
    print(f"创建工作流: {workflow.code} v{workflow.version} (active={workflow.is_active})")

    payload = '{"order_id": "42", "email": "ann@example.com", "phone": "+15550100", "name": "Ann"}'
    instance = await engine.submit(workflow.id, "order-42", payload)
    duplicate = await engine.submit(workflow.id, "order-42", payload)
    print(f"重复提交返回同一实例: {instance.id == duplicate.id}")

    await engine.dispatcher.run_until_idle()
    instance = await engine.triggers.get(instance.id)
    print(f"最终状态: {instance.status.value}, attempts={instance.attempts}")


async def example_templates():
    """从模板目录实例化节点"""
    print("\n=== 节点模板 ===")

    engine = WorkflowEngine.in_memory(executors=ExecutorRegistry.with_logging_executors())
    await engine.templates.load(EXAMPLES_DIR / "templates.yaml")

    page = await engine.templates.search(node_type="email")
    print(f"邮件模板: {[t.code for t in page.data]} {page.pagination}")

    workflow = await engine.load_workflow(EXAMPLES_DIR / "order_followup_from_templates.yaml")
    report = await engine.graphs.validate(workflow.id)
    print(f"校验结果: ok={report.ok} errors={report.errors}")


async def example_retry():
    """SMS 节点可恢复失败后按退避重试"""
    print("\n=== 重试与退避 ===")

    clock = ManualClock(utcnow())
    sms = MockNodeExecutor()
    sms.script("Shipping reminder", ExecutionResult.recoverable("gateway unavailable"))

    executors = ExecutorRegistry()
    executors.register(NodeType.EMAIL, LoggingExecutor())
    executors.register(NodeType.DELAY, LoggingExecutor())
    executors.register(NodeType.SMS, sms)

    settings = EngineSettings(retry=RetryPolicy(base_delay=60, max_delay=3600, max_attempts=3))
    engine = WorkflowEngine.in_memory(settings=settings, executors=executors, clock=clock)
    workflow = await engine.load_workflow(EXAMPLES_DIR / "order_followup.yaml")

    payload = '{"order_id": "7", "email": "bo@example.com", "phone": "+15550101"}'
    instance = await engine.submit(workflow.id, "order-7", payload)

    await engine.dispatcher.run_until_idle()
    instance = await engine.triggers.get(instance.id)
    print(f"第一次: {instance.status.value}, 下次执行 {instance.available_at.isoformat()}")

    clock.advance(timedelta(seconds=60))
    await engine.dispatcher.run_until_idle()
    instance = await engine.triggers.get(instance.id)
    print(f"第二次: {instance.status.value}, attempts={instance.attempts}")

    for log in await engine.triggers.step_logs(instance.id):
        print(f"  step node={log.node_id[:8]} attempt={log.attempt} success={log.success}")


async def main():
    """主函数"""
    await example_order_followup()
    await example_templates()
    await example_retry()


if __name__ == "__main__":
    asyncio.run(main())
