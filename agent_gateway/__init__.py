"""Agent Gateway 顶层包。

面向笔记编辑器插件的流式 LLM 网关：客户端通过 WebSocket 发起请求，
网关按 token 预算裁剪上下文，调用 OpenAI 兼容的流式接口，
再把增量拆成 preview / full 两路帧推回客户端，并支持随时取消。
"""

from agent_gateway.config import GatewaySettings, load_settings
from agent_gateway.transport import Gateway

__all__ = ["Gateway", "GatewaySettings", "load_settings"]
