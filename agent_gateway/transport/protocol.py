"""线上 JSON 帧与内部模型之间的转换。

请求帧字段：type, id, question, messages[{role, content}], intent,
reserve, allowTools, context, confirmToken。
响应帧字段：type, id, seq, text, result, code, message, confirmToken；
空字段不输出。
"""

import json
import math
from typing import Any, Dict, List, Union

from agent_gateway.domain.exceptions import DecodeError
from agent_gateway.domain.models import ROLES, ChatMessage, RequestEnvelope, ResponseEnvelope


# 整数字段（reserve）的取值范围，超出即视为坏帧
MIN_INT = -(2**31)
MAX_INT = 2**31 - 1


def decode_request(raw: Union[str, bytes]) -> RequestEnvelope:
    """把一帧入站数据解析为 RequestEnvelope，任何格式问题都抛 DecodeError。"""

    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        # JSONDecodeError 与 UnicodeDecodeError 都是 ValueError 的子类
        raise DecodeError(code="DECODE_ERROR", message=f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise DecodeError(code="DECODE_ERROR", message="frame must be a JSON object")

    frame_type = data.get("type")
    if not isinstance(frame_type, str) or not frame_type:
        raise DecodeError(code="DECODE_ERROR", message="missing frame type")

    return RequestEnvelope(
        type=frame_type,
        id=_str_field(data, "id"),
        question=_str_field(data, "question"),
        messages=_messages_field(data.get("messages")),
        intent=_str_field(data, "intent"),
        reserve=_int_field(data, "reserve"),
        allow_tools=_bool_field(data, "allowTools"),
        context=_dict_field(data, "context"),
        confirm_token=_str_field(data, "confirmToken"),
    )


def encode_response(frame: ResponseEnvelope) -> str:
    payload: Dict[str, Any] = {"type": frame.type}
    if frame.id:
        payload["id"] = frame.id
    if frame.seq:
        payload["seq"] = frame.seq
    if frame.text:
        payload["text"] = frame.text
    if frame.result:
        payload["result"] = frame.result
    if frame.confirm_token:
        payload["confirmToken"] = frame.confirm_token
    if frame.error_code:
        payload["code"] = frame.error_code
    if frame.error_message:
        payload["message"] = frame.error_message
    return json.dumps(payload, ensure_ascii=False)


def _str_field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise DecodeError(code="DECODE_ERROR", message=f"field {key!r} must be a string")
    return value


def _int_field(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(code="DECODE_ERROR", message=f"field {key!r} must be an integer")
    if isinstance(value, float) and not (math.isfinite(value) and value.is_integer()):
        raise DecodeError(code="DECODE_ERROR", message=f"field {key!r} must be an integer")
    if not MIN_INT <= value <= MAX_INT:
        raise DecodeError(code="DECODE_ERROR", message=f"field {key!r} is out of range")
    return int(value)


def _bool_field(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise DecodeError(code="DECODE_ERROR", message=f"field {key!r} must be a boolean")
    return value


def _dict_field(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(code="DECODE_ERROR", message=f"field {key!r} must be an object")
    return value


def _messages_field(value: Any) -> List[ChatMessage]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(code="DECODE_ERROR", message="field 'messages' must be a list")
    out: List[ChatMessage] = []
    for item in value:
        if not isinstance(item, dict):
            raise DecodeError(code="DECODE_ERROR", message="each message must be an object")
        role = item.get("role")
        content = item.get("content", "")
        if role not in ROLES:
            raise DecodeError(code="DECODE_ERROR", message=f"unknown message role: {role!r}")
        if not isinstance(content, str):
            raise DecodeError(code="DECODE_ERROR", message="message content must be a string")
        out.append(ChatMessage(role=role, content=content))
    return out
