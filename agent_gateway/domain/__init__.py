"""领域层模型与协议。

包含：
- models: ChatMessage / RequestEnvelope / ResponseEnvelope 等数据结构。
- session: 连接级会话（system prompt + 历史）。
- exceptions: 业务异常类型定义。
"""
