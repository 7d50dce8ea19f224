"""
Schema验证器实现
"""
import json
import logging
from typing import Any, Dict, List

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import WorkflowValidationError
from ..models.bindings import BINDING_FIELDS, NodeBindings, node_bindings_adapter


logger = logging.getLogger(__name__)


class SchemaValidator:
    """Schema验证器

    节点绑定通过 pydantic 判别联合验证，触发载荷通过 JSON Schema 验证。
    """

    def __init__(self):
        self.validators_cache: Dict[str, Draft7Validator] = {}

    def validate_bindings(self, node_type: str, bindings: Dict[str, Any]) -> NodeBindings:
        """
        验证节点绑定并返回对应类型的绑定模型

        Raises:
            WorkflowValidationError: 类型未知或字段缺失/非法
        """
        if node_type not in BINDING_FIELDS:
            raise WorkflowValidationError(
                "Invalid node spec",
                [f"node_type: unsupported node type {node_type!r}"]
            )

        try:
            return node_bindings_adapter.validate_python({**bindings, "node_type": node_type})
        except PydanticValidationError as e:
            raise WorkflowValidationError("Invalid node spec", self._format_errors(e))

    def check_schema(self, schema: Dict[str, Any]):
        """确认 payload_schema 本身是合法的 JSON Schema"""
        if not isinstance(schema, dict):
            raise WorkflowValidationError("payload_schema must be a JSON object")
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            raise WorkflowValidationError("Invalid payload_schema", [e.message])

    def validate_payload(self, payload: str, schema: Dict[str, Any]) -> List[str]:
        """
        按 JSON Schema 验证触发载荷

        载荷是不透明字符串；只有声明了 schema 的工作流才要求它是 JSON。
        """
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            return [f"root: payload is not valid JSON ({e})"]
        return self._validate_with_jsonschema(data, schema)

    def _validate_with_jsonschema(
        self,
        data: Any,
        schema: Dict[str, Any]
    ) -> List[str]:
        """使用JSON Schema验证"""
        schema_str = json.dumps(schema, sort_keys=True)
        if schema_str not in self.validators_cache:
            try:
                Draft7Validator.check_schema(schema)
            except SchemaError as e:
                return [f"Invalid schema: {e.message}"]
            self.validators_cache[schema_str] = Draft7Validator(schema)

        validator = self.validators_cache[schema_str]

        errors = []
        for error in validator.iter_errors(data):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")
        return errors

    @staticmethod
    def _format_errors(error: PydanticValidationError) -> List[str]:
        messages = []
        for item in error.errors():
            # 判别联合会在路径前加上标签名，去掉它
            loc = [str(part) for part in item["loc"] if part not in BINDING_FIELDS]
            field_path = ".".join(loc) or "bindings"
            messages.append(f"{field_path}: {item['msg']}")
        return messages
