"""Provider 抽象接口。

Orchestrator 不直接依赖具体厂商的 HTTP 调用，而是依赖此协议：

- 每个厂商实现一个 CompletionProvider（如 OpenAICompatClient）。
- stream() 每收到一个非空增量就 await on_delta(fragment)，顺序与到达顺序一致。
- 正常结束（[DONE] 或响应体结束）返回累积的 StreamResult。
- 取消通过 asyncio.CancelledError 传播，Provider 只需及时释放连接。
- on_delta 抛出的异常会中止流，并原样作为本次调用的结果抛出。
"""

from typing import Awaitable, Callable, List, Protocol

from agent_gateway.domain.models import ChatMessage, ChatOptions, StreamResult


DeltaHandler = Callable[[str], Awaitable[None]]


class CompletionProvider(Protocol):
    """流式补全 Provider 协议。"""

    name: str

    def max_prompt_tokens(self, model: str) -> int:
        ...

    async def stream(
        self,
        messages: List[ChatMessage],
        options: ChatOptions,
        on_delta: DeltaHandler,
    ) -> StreamResult:
        ...
