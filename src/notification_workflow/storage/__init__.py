"""存储层：仓库接口与实现"""

from .repository import (
    WorkflowRepository,
    TemplateRepository,
    TriggerRepository,
    InMemoryWorkflowRepository,
    InMemoryTemplateRepository,
    InMemoryTriggerRepository
)
from .sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemyTemplateRepository,
    SQLAlchemyTriggerRepository
)

__all__ = [
    "WorkflowRepository",
    "TemplateRepository",
    "TriggerRepository",
    "InMemoryWorkflowRepository",
    "InMemoryTemplateRepository",
    "InMemoryTriggerRepository",
    "DatabaseManager",
    "SQLAlchemyWorkflowRepository",
    "SQLAlchemyTemplateRepository",
    "SQLAlchemyTriggerRepository"
]
