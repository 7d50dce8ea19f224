"""
分页
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, TypeVar

from ..exceptions import WorkflowValidationError


T = TypeVar("T")

MAX_PAGE_SIZE = 100


def page_window(page: int, limit: int) -> tuple:
    """校验从 1 开始的分页参数，返回 (offset, limit)"""
    if page < 1:
        raise WorkflowValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise WorkflowValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit, limit


@dataclass
class Page(Generic[T]):
    """分页结果"""
    data: List[T] = field(default_factory=list)
    current: int = 1
    limit: int = 20
    records: int = 0

    @property
    def pages(self) -> int:
        return math.ceil(self.records / self.limit) if self.records else 0

    @property
    def pagination(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "limit": self.limit,
            "records": self.records,
            "pages": self.pages
        }
