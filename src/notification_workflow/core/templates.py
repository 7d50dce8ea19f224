"""
节点模板目录
"""
import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..exceptions import NotFoundError, WorkflowValidationError
from ..models.bindings import BINDING_FIELDS
from ..models.page import Page, page_window
from ..models.workflow import NodeTemplate, NodeType
from ..storage.repository import TemplateRepository
from .parser import load_document


logger = logging.getLogger(__name__)


class NodeTemplateRegistry:
    """可复用节点模板目录

    节点从模板实例化时复制绑定，之后模板的变化不会影响已创建的节点。
    """

    def __init__(self, repository: TemplateRepository):
        self.repository = repository

    async def get(self, code: str) -> NodeTemplate:
        """按编码获取模板"""
        template = await self.repository.get_by_code(code)
        if template is None:
            raise NotFoundError("Template", code)
        return template

    async def search(
        self,
        node_type: Union[NodeType, str, None] = None,
        text: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Page[NodeTemplate]:
        """
        搜索模板

        Args:
            node_type: 按节点类型过滤
            text: 编码或名称的子串（不区分大小写）
            page: 页码，从 1 开始
            limit: 每页数量

        Returns:
            按创建时间倒序的分页结果
        """
        offset, limit = page_window(page, limit)
        if node_type is not None:
            node_type = self._node_type(node_type)

        templates, total = await self.repository.search(
            node_type=node_type,
            text=text,
            offset=offset,
            limit=limit
        )
        return Page(data=templates, current=page, limit=limit, records=total)

    async def register(self, template: Union[NodeTemplate, Dict[str, Any]]) -> NodeTemplate:
        """注册模板；编码重复时抛出 WorkflowValidationError"""
        if isinstance(template, dict):
            template = self._from_dict(template)

        if not template.code:
            raise WorkflowValidationError("Template code is required")

        unknown = sorted(set(template.default_bindings) - set(BINDING_FIELDS[template.type.value]))
        if unknown:
            raise WorkflowValidationError(
                f"Template '{template.code}' has bindings not valid for "
                f"{template.type.value} nodes",
                [f"{name}: not a {template.type.value} binding" for name in unknown]
            )

        await self.repository.save(template)
        logger.info(f"Registered node template '{template.code}' ({template.type.value})")
        return template

    async def load(self, path: Union[str, Path]) -> List[NodeTemplate]:
        """从 YAML/JSON 文件批量加载模板"""
        data = load_document(path)
        entries = data.get("templates") if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise WorkflowValidationError(f"{path}: expected a 'templates' list")

        loaded = []
        for entry in entries:
            loaded.append(await self.register(entry))
        return loaded

    async def instantiate(self, code: str, overrides: Dict[str, Any] = None) -> Dict[str, Any]:
        """
        用模板默认绑定加上覆盖值生成节点定义

        Returns:
            可直接传给 WorkflowGraphService.add_node 的节点定义
        """
        template = await self.get(code)
        overrides = dict(overrides or {})

        bindings = copy.deepcopy(template.default_bindings)
        bindings.update(overrides.pop("bindings", {}) or {})
        for name in BINDING_FIELDS[template.type.value]:
            if name in overrides:
                bindings[name] = overrides.pop(name)

        override_type = overrides.pop("type", None)
        if override_type is not None and self._node_type(override_type) != template.type:
            raise WorkflowValidationError(
                f"Template '{code}' is a {template.type.value} template, "
                f"cannot instantiate as {override_type}"
            )

        spec = {
            "type": template.type.value,
            "name": overrides.pop("name", template.name),
            "template_code": template.code,
            "bindings": bindings,
        }
        spec.update(overrides)
        return spec

    def _from_dict(self, data: Dict[str, Any]) -> NodeTemplate:
        missing = [key for key in ("code", "type") if not data.get(key)]
        if missing:
            raise WorkflowValidationError(
                "Invalid template definition",
                [f"{key}: field required" for key in missing]
            )
        return NodeTemplate(
            code=data["code"],
            name=data.get("name") or data["code"],
            type=self._node_type(data["type"]),
            default_bindings=dict(data.get("default_bindings") or data.get("bindings") or {}),
            description=data.get("description")
        )

    @staticmethod
    def _node_type(value: Union[NodeType, str]) -> NodeType:
        try:
            return NodeType(value)
        except ValueError:
            raise WorkflowValidationError(f"Unsupported node type: {value!r}")
