"""统一的对话、帧与结果数据模型。

本模块定义了 Gateway / Orchestrator / Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant），创建后不可变。
- RequestEnvelope: 客户端发来的一帧请求（agent/run、agent/cancel 等）。
- ResponseEnvelope: 发回客户端的一帧响应（preview/full/done/error 等）。
- ChatOptions / StreamResult: 调用 Provider 流式接口时的参数与结果。
- RunOutcome: 一次 run 的终态，供 Gateway 记录日志与测试断言。

线上 JSON 字段名与内部字段名的转换由 transport.protocol 负责，
这里只保留 Python 风格的命名。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# 对话消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]
ROLES = ("system", "user", "assistant")

# 请求帧类型
RUN = "agent/run"
CANCEL = "agent/cancel"
RESET = "agent/reset"
TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"

# 响应帧类型
PREVIEW_DELTA = "agent/preview.delta"
FULL_DELTA = "agent/full.delta"
DONE = "agent/done"
ERROR = "agent/error"
TOOL_CALL_DELTA = "tools/call.delta"
TOOL_CALL_RESULT = "tools/call.result"


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息。

    - role: 消息角色，如 system/user/assistant。
    - content: 纯文本内容。

    消息顺序即发给 Provider 的对话顺序，因此列表中的位置有语义。
    """

    role: Role
    content: str


@dataclass
class RequestEnvelope:
    """客户端 -> 网关 的请求帧。

    id 由客户端分配，在同一连接内唯一，是所有响应帧和取消操作的关联键。
    question 是旧版单轮字段；messages 是完整的对话列表，二者择一。
    """

    type: str
    id: str = ""
    question: str = ""
    messages: List[ChatMessage] = field(default_factory=list)
    intent: str = ""
    reserve: int = 0
    allow_tools: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    confirm_token: str = ""


@dataclass
class ResponseEnvelope:
    """网关 -> 客户端 的响应帧。

    seq 只对 full delta 有意义：同一请求内从 1 开始严格递增。
    """

    type: str
    id: str = ""
    seq: int = 0
    text: str = ""
    result: Optional[Dict[str, Any]] = None
    error_code: str = ""
    error_message: str = ""
    confirm_token: str = ""


@dataclass
class ChatOptions:
    """流式调用参数。"""

    model: str = "chat"
    temperature: float = 0.3
    max_tokens: int = 800
    stop: Optional[List[str]] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class StreamResult:
    """一次流式调用累积的结果，避免丢失元数据。"""

    text: str = ""
    model: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    chunk_count: int = 0


RunStatus = Literal["done", "error", "cancelled", "timeout"]


@dataclass
class RunOutcome:
    """一次 run 的终态。"""

    id: str
    status: RunStatus
    text: str = ""
    error_code: str = ""
    error_message: str = ""
    full_frames: int = 0
    preview_sent: bool = False
