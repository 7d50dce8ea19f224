"""
绑定模板渲染

节点绑定中的 ``{{ payload.email }}`` 占位符在执行前按触发载荷求值。
"""
import json
import re
from typing import Any, Dict

from ..exceptions import BindingRenderError
from ..models.trigger import TriggerInstance
from ..models.workflow import WorkflowNode


_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")

_TEMPLATE_SUFFIX = "_template"


def parse_payload(payload: str) -> Any:
    """载荷是不透明字符串；是 JSON 时按结构访问，否则保留原文"""
    try:
        return json.loads(payload)
    except (TypeError, ValueError):
        return payload


def lookup(scope: Dict[str, Any], expression: str) -> Any:
    """按点号路径取值，缺失时抛出 KeyError"""
    current: Any = scope
    for part in expression.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(part)
    return current


def render(template: str, scope: Dict[str, Any], node_id: str = "") -> str:
    """替换模板中的所有占位符"""

    def _substitute(match):
        expression = match.group(1)
        try:
            value = lookup(scope, expression)
        except KeyError as e:
            raise BindingRenderError(node_id, expression, f"missing key {e.args[0]!r}")
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return _PLACEHOLDER.sub(_substitute, template)


def resolve_bindings(node: WorkflowNode, instance: TriggerInstance) -> Dict[str, Any]:
    """
    渲染节点绑定，得到交给执行器的上下文

    ``*_template`` 字段渲染后去掉后缀（``email_to_template`` -> ``email_to``），
    其余字段原样保留；另附原始载荷和实例信息。
    """
    scope = {
        "payload": parse_payload(instance.payload),
        "trigger": {
            "id": instance.id,
            "idempotency_key": instance.idempotency_key,
            "attempts": instance.attempts,
        },
        "workflow": {"id": instance.workflow_id},
    }

    context: Dict[str, Any] = {
        "node_type": node.node_type.value,
        "payload": instance.payload,
    }
    for name, value in node.bindings.model_dump(exclude={"node_type"}).items():
        if name.endswith(_TEMPLATE_SUFFIX):
            rendered = render(value, scope, node.id) if value is not None else None
            context[name[:-len(_TEMPLATE_SUFFIX)]] = rendered
        else:
            context[name] = value

    return context
