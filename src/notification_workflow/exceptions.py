"""
工作流引擎异常定义
"""
from typing import List, Optional


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class ConfigurationError(WorkflowEngineError):
    """配置错误"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流定义校验失败"""
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class NotFoundError(WorkflowEngineError):
    """工作流、节点、边、模板或触发实例不存在"""
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


class UnknownNodeError(WorkflowEngineError):
    """边的端点不属于该工作流"""
    def __init__(self, workflow_id: str, node_id: str):
        self.workflow_id = workflow_id
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' does not belong to workflow '{workflow_id}'")


class CycleDetectedError(WorkflowEngineError):
    """添加边会形成环"""
    def __init__(self, from_node_id: str, to_node_id: str):
        self.from_node_id = from_node_id
        self.to_node_id = to_node_id
        super().__init__(
            f"Edge '{from_node_id}' -> '{to_node_id}' would create a cycle"
        )


class DuplicateEdgeError(WorkflowEngineError):
    """相同端点的边已存在"""
    def __init__(self, from_node_id: str, to_node_id: str):
        self.from_node_id = from_node_id
        self.to_node_id = to_node_id
        super().__init__(f"Edge '{from_node_id}' -> '{to_node_id}' already exists")


class InvalidTransitionError(WorkflowEngineError):
    """不允许的触发实例状态转换"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class PersistenceError(WorkflowEngineError):
    """存储层异常"""
    pass


class BindingRenderError(WorkflowEngineError):
    """绑定模板引用了载荷中不存在的值"""
    def __init__(self, node_id: str, expression: str, reason: str):
        self.node_id = node_id
        self.expression = expression
        super().__init__(f"Node '{node_id}': cannot render '{{{{ {expression} }}}}': {reason}")


class WorkflowParseError(WorkflowValidationError):
    """工作流或模板定义文件无法解析"""
    pass
