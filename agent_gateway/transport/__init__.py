"""WebSocket 传输层：线上帧编解码与连接网关。"""

from agent_gateway.transport.gateway import Gateway
from agent_gateway.transport.protocol import decode_request, encode_response

__all__ = ["Gateway", "decode_request", "encode_response"]
