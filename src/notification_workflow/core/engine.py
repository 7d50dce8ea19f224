"""
通知工作流引擎
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..clock import Clock, utcnow
from ..config import EngineSettings
from ..integrations.event_bus import EventBus
from ..integrations.executors import ExecutorRegistry
from ..integrations.validators import SchemaValidator
from ..models.trigger import TriggerInstance
from ..models.workflow import WorkflowGraph
from ..storage.repository import (
    InMemoryTemplateRepository, InMemoryTriggerRepository, InMemoryWorkflowRepository,
    TemplateRepository, TriggerRepository, WorkflowRepository
)
from ..storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyTemplateRepository, SQLAlchemyTriggerRepository,
    SQLAlchemyWorkflowRepository
)
from .dispatcher import Dispatcher
from .graph import WorkflowGraphService
from .parser import WorkflowParser
from .state_machine import ExecutionStateMachine
from .templates import NodeTemplateRegistry
from .triggers import TriggerService


logger = logging.getLogger(__name__)


class WorkflowEngine:
    """组装模板目录、工作流图、触发实例、状态机和调度器"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        template_repository: TemplateRepository,
        trigger_repository: TriggerRepository,
        settings: Optional[EngineSettings] = None,
        executors: Optional[ExecutorRegistry] = None,
        event_bus: Optional[EventBus] = None,
        clock: Clock = utcnow,
        db_manager: Optional[DatabaseManager] = None
    ):
        self.settings = settings or EngineSettings()
        self.event_bus = event_bus or EventBus()
        self.executors = executors or ExecutorRegistry()
        self.clock = clock
        self.db_manager = db_manager

        validator = SchemaValidator()

        self.templates = NodeTemplateRegistry(template_repository)
        self.graphs = WorkflowGraphService(
            workflow_repository,
            trigger_repository,
            template_registry=self.templates,
            validator=validator,
            event_bus=self.event_bus
        )
        self.triggers = TriggerService(
            workflow_repository,
            trigger_repository,
            validator=validator,
            event_bus=self.event_bus,
            clock=clock
        )
        self.state_machine = ExecutionStateMachine(
            trigger_repository,
            retry_policy=self.settings.retry,
            event_bus=self.event_bus,
            clock=clock
        )
        self.dispatcher = Dispatcher(
            workflow_repository,
            trigger_repository,
            self.state_machine,
            self.executors,
            settings=self.settings.dispatcher,
            clock=clock
        )
        self.parser = WorkflowParser(self.graphs)

    @classmethod
    def in_memory(
        cls,
        settings: Optional[EngineSettings] = None,
        executors: Optional[ExecutorRegistry] = None,
        clock: Clock = utcnow
    ) -> "WorkflowEngine":
        """内存存储的引擎（测试与 CLI 演练）"""
        return cls(
            InMemoryWorkflowRepository(),
            InMemoryTemplateRepository(),
            InMemoryTriggerRepository(),
            settings=settings,
            executors=executors,
            clock=clock
        )

    @classmethod
    async def from_database(
        cls,
        settings: EngineSettings,
        executors: Optional[ExecutorRegistry] = None,
        create_tables: bool = True
    ) -> "WorkflowEngine":
        """连接 ``settings.database_url`` 指向的数据库"""
        db_manager = DatabaseManager(settings.database_url)
        await db_manager.initialize(create_tables=create_tables)
        logger.info("Database initialized")

        return cls(
            SQLAlchemyWorkflowRepository(db_manager),
            SQLAlchemyTemplateRepository(db_manager),
            SQLAlchemyTriggerRepository(db_manager),
            settings=settings,
            executors=executors,
            db_manager=db_manager
        )

    async def load_workflow(
        self,
        source: Union[str, Path, Dict[str, Any]],
        principal: Optional[str] = None
    ) -> WorkflowGraph:
        """从定义文件/字典创建工作流"""
        return await self.parser.build(source, principal=principal)

    async def submit(
        self,
        workflow_id: str,
        idempotency_key: str,
        payload: Any,
        principal: Optional[str] = None
    ) -> TriggerInstance:
        return await self.triggers.submit(workflow_id, idempotency_key, payload, principal)

    async def start(self):
        await self.dispatcher.start()

    async def stop(self):
        await self.dispatcher.stop()

    async def close(self):
        """停止调度器并释放数据库连接"""
        await self.dispatcher.stop()
        if self.db_manager:
            await self.db_manager.close()
