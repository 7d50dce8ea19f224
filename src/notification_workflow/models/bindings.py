"""
节点绑定模型

每种节点类型有各自的绑定模型，以 ``node_type`` 作为判别字段，
邮件节点不会携带短信字段，反之亦然。
"""
import re
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


_ISO_DURATION = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def parse_iso_duration(value: str) -> int:
    """将 ISO-8601 时长（``PT2H``、``P1DT30M``）转换为毫秒

    不接受年、月等长度不固定的单位。
    """
    match = _ISO_DURATION.match(value.strip().upper()) if value else None
    if not match or value.strip().upper() in ("P", "PT"):
        raise ValueError(f"invalid ISO-8601 duration: {value!r}")

    parts = {k: float(v) for k, v in match.groupdict().items() if v}
    seconds = (
        parts.get("weeks", 0) * 604800
        + parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )
    return int(round(seconds * 1000))


class _Bindings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class EmailBindings(_Bindings):
    node_type: Literal["email"] = "email"
    email_to_template: str = Field(..., min_length=1)
    email_subject_template: Optional[str] = None
    email_body_template: str = Field(..., min_length=1)


class SmsBindings(_Bindings):
    node_type: Literal["sms"] = "sms"
    sms_to_template: str = Field(..., min_length=1)
    sms_body_template: str = Field(..., min_length=1)


class DelayBindings(_Bindings):
    node_type: Literal["delay"] = "delay"
    delay_ms: Optional[int] = Field(None, ge=0)
    delay_duration: Optional[str] = None

    @model_validator(mode="after")
    def _normalize_duration(self) -> "DelayBindings":
        if self.delay_ms is None and not self.delay_duration:
            raise ValueError("delay nodes require delay_ms or delay_duration")

        if self.delay_duration:
            duration_ms = parse_iso_duration(self.delay_duration)
            if self.delay_ms is not None and self.delay_ms != duration_ms:
                raise ValueError(
                    f"delay_ms={self.delay_ms} disagrees with "
                    f"delay_duration={self.delay_duration!r}"
                )
            # 冻结模型，绕过 setattr 限制
            object.__setattr__(self, "delay_ms", duration_ms)
        return self


NodeBindings = Annotated[
    Union[EmailBindings, SmsBindings, DelayBindings],
    Field(discriminator="node_type")
]

node_bindings_adapter = TypeAdapter(NodeBindings)

# 各类型接受的字段，用于从平铺的节点定义中挑出绑定字段
BINDING_FIELDS = {
    "email": ("email_to_template", "email_subject_template", "email_body_template"),
    "sms": ("sms_to_template", "sms_body_template"),
    "delay": ("delay_ms", "delay_duration"),
}
