from agent_gateway.tools.definitions import ToolCall, ToolDef, ToolParam, ToolResult
from agent_gateway.tools.registry import ToolRegistry
from agent_gateway.tools.vault import vault_tools

__all__ = ["ToolCall", "ToolDef", "ToolParam", "ToolResult", "ToolRegistry", "vault_tools"]
