from typing import Any, Callable, Dict, List, Optional, Tuple

from agent_gateway.domain.exceptions import BusinessError
from .definitions import ToolCall, ToolDef, ToolResult


ToolFunc = Callable[[Dict[str, Any]], str]


class ToolRegistry:
    """工具名 -> (定义, 可执行函数) 的映射。

    只做查表与调用，不对参数做 schema 校验。函数抛出的异常会被转换为
    is_error=True 的结果，而不是协议级错误。
    """

    def __init__(self, tools: Optional[Dict[str, Tuple[ToolDef, ToolFunc]]] = None):
        self._tools: Dict[str, Tuple[ToolDef, ToolFunc]] = dict(tools or {})

    def register(self, tool_def: ToolDef, func: ToolFunc) -> None:
        self._tools[tool_def.name] = (tool_def, func)

    def list_tools(self) -> List[ToolDef]:
        return [entry[0] for entry in self._tools.values()]

    def call(self, call: ToolCall) -> ToolResult:
        entry = self._tools.get(call.name)
        if entry is None:
            raise BusinessError(code="TOOL_NOT_FOUND", message=f"Tool not registered: {call.name}")
        _, func = entry
        try:
            content = func(call.arguments)
        except Exception as exc:
            return ToolResult(call_id=call.id, content=f"Error: {exc}", is_error=True)
        return ToolResult(call_id=call.id, content=content)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
