"""连接级会话状态。

Session 只属于一个连接，由该连接的请求完成路径独占修改：
成功的 run 一次性追加 user + assistant 两条消息，agent/reset 清空历史。
同一连接上的所有请求运行在同一个事件循环里，因此不需要额外加锁。

max_turns 限制保留的轮数（一轮 = user + assistant），超出时丢弃最旧的一轮；
它只约束内存占用，发给 Provider 的长度仍由 ContextBudgeter 负责。
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .models import ChatMessage


@dataclass
class Session:
    system_prompt: Optional[str] = None
    history: List[ChatMessage] = field(default_factory=list)
    max_turns: int = 0  # 0 表示不限制

    def build_messages(
        self,
        question: str,
        system_prompt: Optional[str] = None,
    ) -> List[ChatMessage]:
        """组装 system + 历史 + 本轮用户输入。

        system_prompt 参数可覆盖会话默认值（例如按 intent 追加说明）。
        """

        prompt = self.system_prompt if system_prompt is None else system_prompt
        msgs: List[ChatMessage] = []
        if prompt and prompt.strip():
            msgs.append(ChatMessage(role="system", content=prompt))
        msgs.extend(self.history)
        if question:
            msgs.append(ChatMessage(role="user", content=question))
        return msgs

    def append_turn(self, user: str, assistant: str) -> None:
        self.history.extend([
            ChatMessage(role="user", content=user),
            ChatMessage(role="assistant", content=assistant),
        ])
        if self.max_turns > 0 and len(self.history) > 2 * self.max_turns:
            del self.history[: len(self.history) - 2 * self.max_turns]

    def reset(self) -> None:
        self.history = []
