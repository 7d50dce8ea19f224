"""
Pytest 配置和公共 fixtures
"""
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from notification_workflow.config import DispatcherSettings, EngineSettings, RetryPolicy
from notification_workflow.core import WorkflowEngine
from notification_workflow.integrations import ExecutorRegistry, MockNodeExecutor
from notification_workflow.models import NodeType
from notification_workflow.storage import DatabaseManager


ORDER_PAYLOAD = '{"order_id": "42", "email": "ann@example.com", "phone": "+15550100", "name": "Ann"}'


class ManualClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now += delta


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(base_delay=60, max_delay=3600, max_attempts=3)


@pytest.fixture
def settings(retry_policy) -> EngineSettings:
    return EngineSettings(
        retry=retry_policy,
        dispatcher=DispatcherSettings(poll_interval=0.05, batch_size=10, executor_timeout=0.5)
    )


@pytest.fixture
def mock_executor() -> MockNodeExecutor:
    """所有节点类型共用的模拟执行器"""
    return MockNodeExecutor()


@pytest.fixture
def executors(mock_executor) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    for node_type in NodeType:
        registry.register(node_type, mock_executor)
    return registry


@pytest.fixture
def engine(settings, executors, clock) -> WorkflowEngine:
    """内存存储的引擎"""
    return WorkflowEngine.in_memory(settings=settings, executors=executors, clock=clock)


def order_definition(**overrides) -> dict:
    """A(email) -> B(delay 2h) -> C(sms)"""
    definition = {
        "workflow": {
            "code": "order_followup",
            "name": "Order follow-up",
            "entry": "A",
            "activate": True,
            "nodes": [
                {
                    "key": "A",
                    "type": "email",
                    "email_to_template": "{{ payload.email }}",
                    "email_subject_template": "Order {{ payload.order_id }}",
                    "email_body_template": "Thanks {{ payload.name }}"
                },
                {"key": "B", "type": "delay", "delay_duration": "PT2H"},
                {
                    "key": "C",
                    "type": "sms",
                    "sms_to_template": "{{ payload.phone }}",
                    "sms_body_template": "Order {{ payload.order_id }} ships today"
                }
            ],
            "edges": [
                {"from": "A", "to": "B"},
                {"from": "B", "to": "C"}
            ]
        }
    }
    definition["workflow"].update(overrides)
    return definition


@pytest.fixture
def order_workflow_definition() -> dict:
    return order_definition()


@pytest_asyncio.fixture
async def order_workflow(engine, order_workflow_definition):
    """已激活的订单跟进工作流"""
    return await engine.load_workflow(order_workflow_definition, principal="ops")


@pytest_asyncio.fixture
async def test_database(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库（SQLite 文件，便于多连接并发）"""
    db_manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'workflow.db'}")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()
