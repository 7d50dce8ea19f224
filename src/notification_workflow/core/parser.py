"""
工作流定义解析器
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..exceptions import WorkflowParseError, WorkflowValidationError
from ..models.workflow import WorkflowGraph


logger = logging.getLogger(__name__)


def _parse_yaml(content: str) -> Any:
    """解析YAML格式"""
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise WorkflowParseError(f"Failed to parse YAML: {e}")


def _parse_json(content: str) -> Any:
    """解析JSON格式"""
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise WorkflowParseError(f"Failed to parse JSON: {e}")


_PARSERS = {
    'yaml': _parse_yaml,
    'yml': _parse_yaml,
    'json': _parse_json
}


def load_document(path: Union[str, Path]) -> Any:
    """按扩展名读取 YAML/JSON 文件"""
    file_path = Path(path)
    suffix = file_path.suffix.lower().lstrip('.')
    if suffix not in _PARSERS:
        raise WorkflowParseError(f"Unsupported file format: {suffix or file_path.name}")
    if not file_path.is_file():
        raise WorkflowParseError(f"File not found: {file_path}")

    with open(file_path, 'r', encoding='utf-8') as f:
        content = f.read()

    return _PARSERS[suffix](content)


class WorkflowParser:
    """工作流解析器

    定义格式::

        workflow:
          code: order_followup
          name: Order follow-up
          entry: confirm
          nodes:
            - key: confirm
              type: email
              email_to_template: "{{ payload.email }}"
              email_body_template: "Thanks for order {{ payload.order_id }}"
            - key: wait
              template: wait_2h
          edges:
            - from: confirm
              to: wait

    节点通过本地 ``key`` 引用；构建时经由 WorkflowGraphService 逐项校验。
    """

    def __init__(self, graph_service):
        self.graph_service = graph_service

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Dict[str, Any]:
        """
        解析工作流定义并检查结构

        Args:
            source: 文件路径、YAML/JSON 字符串或字典

        Returns:
            规范化后的定义字典
        """
        if isinstance(source, dict):
            return self._normalize(source)

        if isinstance(source, Path) or (isinstance(source, str) and Path(source).suffix.lower().lstrip('.') in _PARSERS):
            return self._normalize(load_document(source))

        if isinstance(source, str):
            return self._normalize(self.parse_string(source))

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_string(self, content: str) -> Any:
        """解析工作流字符串，YAML 是 JSON 的超集，直接按 YAML 读取"""
        data = _parse_yaml(content)
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        return data

    async def build(
        self,
        source: Union[str, Path, Dict[str, Any]],
        principal: Optional[str] = None
    ) -> WorkflowGraph:
        """
        解析并创建工作流

        Returns:
            WorkflowGraph: 创建后的工作流（``activate: true`` 时已激活）
        """
        definition = self.parse(source)
        service = self.graph_service

        workflow = await service.create_workflow(
            code=definition['code'],
            name=definition['name'],
            version=definition.get('version'),
            principal=principal,
            payload_schema=definition.get('payload_schema')
        )

        node_ids: Dict[str, str] = {}
        try:
            for node_spec in definition['nodes']:
                spec = dict(node_spec)
                key = spec.pop('key')
                if 'template' not in spec:
                    spec.setdefault('name', key)
                node = await service.add_node(workflow.id, spec)
                node_ids[key] = node.id

            for edge in definition['edges']:
                await service.add_edge(workflow.id, node_ids[edge['from']], node_ids[edge['to']])

            await service.set_entry_node(workflow.id, node_ids[definition['entry']])

            if definition.get('activate'):
                await service.activate(workflow.id)
        except Exception:
            # 未完成的版本不保留
            await service.discard(workflow.id)
            logger.warning(f"Discarded partially built workflow '{workflow.code}' v{workflow.version}")
            raise

        logger.info(
            f"Built workflow '{workflow.code}' v{workflow.version} "
            f"with {len(node_ids)} nodes and {len(definition['edges'])} edges"
        )
        return await service.get_workflow(workflow.id)

    def _normalize(self, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        if 'workflow' in data:
            data = data['workflow']
        if not isinstance(data, dict):
            raise WorkflowParseError("'workflow' must be a mapping")

        errors: List[str] = []
        for field_name in ('code', 'name'):
            if not data.get(field_name):
                errors.append(f"{field_name}: field required")

        nodes = data.get('nodes') or []
        if not isinstance(nodes, list) or not nodes:
            errors.append("nodes: at least one node is required")
            nodes = []

        keys: List[str] = []
        for index, node in enumerate(nodes):
            if not isinstance(node, dict):
                errors.append(f"nodes.{index}: must be a mapping")
                continue
            key = node.get('key')
            if not key:
                errors.append(f"nodes.{index}.key: field required")
            elif key in keys:
                errors.append(f"nodes.{index}.key: duplicate key '{key}'")
            else:
                keys.append(key)

        edges = data.get('edges') or []
        if not isinstance(edges, list):
            errors.append("edges: must be a list")
            edges = []
        for index, edge in enumerate(edges):
            if not isinstance(edge, dict):
                errors.append(f"edges.{index}: must be a mapping")
                continue
            for end in ('from', 'to'):
                if edge.get(end) not in keys:
                    errors.append(f"edges.{index}.{end}: unknown node key {edge.get(end)!r}")

        entry = data.get('entry') or (keys[0] if keys else None)
        if entry is not None and entry not in keys:
            errors.append(f"entry: unknown node key {entry!r}")

        version = data.get('version')
        if version is not None and (not isinstance(version, int) or isinstance(version, bool) or version < 1):
            errors.append("version: must be a positive integer")

        if errors:
            raise WorkflowValidationError("Invalid workflow definition", errors)

        return {
            'code': data['code'],
            'name': data['name'],
            'version': version,
            'entry': entry,
            'payload_schema': data.get('payload_schema'),
            'activate': bool(data.get('activate', False)),
            'nodes': [dict(node) for node in nodes],
            'edges': [{'from': edge['from'], 'to': edge['to']} for edge in edges]
        }
