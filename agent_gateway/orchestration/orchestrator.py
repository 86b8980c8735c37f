"""请求编排核心模块。

一次 agent/run 的生命周期：

1. 在取消登记表里登记 CancelHandle，所有退出路径都会移除它。
2. 组装消息（system + 历史 + 本轮 user，或客户端给出的 messages），
   交给 ContextBudgeter 按 token 预算裁剪。
3. 调用 Provider 流式接口；每个增量都发一帧 full delta（seq 从 1 递增），
   预览片段在遇到句末符号或超过 preview_delay 时发送一次。
4. 成功发 agent/done 并写入会话历史；失败发一帧 agent/error；
   客户端取消不再发任何帧；超时发 LLM_TIMEOUT 错误帧。
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Protocol, Tuple

from agent_gateway.context.budget import ContextBudgeter
from agent_gateway.domain.exceptions import BusinessError, DuplicateRequestError, ValidationError
from agent_gateway.domain.models import (
    DONE,
    ERROR,
    FULL_DELTA,
    PREVIEW_DELTA,
    ChatMessage,
    ChatOptions,
    RequestEnvelope,
    ResponseEnvelope,
    RunOutcome,
)
from agent_gateway.domain.session import Session
from agent_gateway.infrastructure.logging.logger import log_event
from agent_gateway.orchestration.cancellation import CancelHandle, CancelRegistry
from agent_gateway.prompts import build_system_prompt
from agent_gateway.providers.base import CompletionProvider


SENTENCE_TERMINALS = "。.!?！？"


class FrameSink(Protocol):
    async def send(self, frame: ResponseEnvelope) -> None:
        ...


def _first_sentence_end(text: str) -> int:
    positions = [i for i in (text.find(ch) for ch in SENTENCE_TERMINALS) if i >= 0]
    return min(positions) if positions else -1


class DeltaSplitter:
    """把 Provider 增量拆成 preview / full 两路帧。

    - full：每个非空增量一帧，seq 严格递增、从 1 开始。
    - preview：缓冲到出现句末符号（取到第一句为止），或距请求开始已超过
      preview_delay（取当前全部缓冲），二者先到者触发，只发一次。
    """

    def __init__(
        self,
        request_id: str,
        sink: FrameSink,
        started_at: float,
        preview_delay: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.request_id = request_id
        self.seq = 0
        self.preview_sent = False
        self.pieces: List[str] = []
        self._sink = sink
        self._started_at = started_at
        self._preview_delay = preview_delay
        self._clock = clock
        self._buf: List[str] = []

    @property
    def text(self) -> str:
        return "".join(self.pieces)

    async def on_delta(self, delta: str) -> None:
        if not delta:
            return
        self.pieces.append(delta)

        if not self.preview_sent:
            self._buf.append(delta)
            buffered = "".join(self._buf)
            end = _first_sentence_end(buffered)
            preview = ""
            if end >= 0:
                preview = buffered[: end + 1]
            elif self._clock() - self._started_at >= self._preview_delay:
                preview = buffered
            if preview:
                self.preview_sent = True
                self._buf = []
                await self._sink.send(
                    ResponseEnvelope(type=PREVIEW_DELTA, id=self.request_id, seq=1, text=preview)
                )

        self.seq += 1
        await self._sink.send(
            ResponseEnvelope(type=FULL_DELTA, id=self.request_id, seq=self.seq, text=delta)
        )


class Orchestrator:
    """单个连接上的请求编排器。

    每个连接持有一个 Orchestrator（以及它的取消登记表），因此请求 id
    只需在连接内唯一；Provider 与 ContextBudgeter 在连接之间共享。
    """

    def __init__(
        self,
        provider: CompletionProvider,
        budgeter: ContextBudgeter,
        settings,
        registry: Optional[CancelRegistry] = None,
        log_ctx: Optional[dict] = None,
    ):
        self._provider = provider
        self._budgeter = budgeter
        self._settings = settings
        self._registry = registry or CancelRegistry()
        self._log_ctx = dict(log_ctx or {})

    @property
    def registry(self) -> CancelRegistry:
        return self._registry

    def cancel(self, request_id: str) -> bool:
        """取消指定请求；请求不存在（可能已结束）时什么也不做。"""

        found = self._registry.cancel(request_id, reason="client")
        self._log(logging.INFO, "Cancel requested", request_id=request_id, found=found)
        return found

    def cancel_all(self, reason: str = "shutdown") -> int:
        return self._registry.cancel_all(reason)

    def admit(self, request_id: str) -> CancelHandle:
        """同步登记取消句柄，id 正在执行时抛 DuplicateRequestError。

        Gateway 在读循环里调用它，保证紧跟在 run 后面的 cancel 一定能找到句柄。
        """

        handle = CancelHandle(request_id)
        self._registry.register(request_id, handle)
        return handle

    async def run(
        self,
        request: RequestEnvelope,
        sink: FrameSink,
        session: Session,
        handle: Optional[CancelHandle] = None,
    ) -> RunOutcome:
        started_at = time.monotonic()
        if handle is None:
            try:
                handle = self.admit(request.id)
            except DuplicateRequestError as exc:
                self._log(logging.WARNING, "Duplicate request id", request_id=request.id)
                await self._send_error(sink, request.id, exc.code, exc.message)
                return RunOutcome(id=request.id, status="error", error_code=exc.code, error_message=exc.message)

        if handle.reason is not None:
            # 还没开始执行就被取消
            self._registry.remove(request.id, handle)
            self._log(logging.INFO, "Run cancelled", request_id=request.id, reason=handle.reason, full_frames=0)
            return RunOutcome(id=request.id, status="cancelled")

        splitter = DeltaSplitter(request.id, sink, started_at, self._settings.preview_delay)
        work = asyncio.ensure_future(self._execute(request, sink, session, splitter))
        handle.attach(work)
        self._log(logging.INFO, "Run started", request_id=request.id, intent=request.intent)
        try:
            try:
                outcome = await asyncio.wait_for(work, timeout=self._settings.request_timeout)
            except asyncio.TimeoutError:
                message = f"request timed out after {self._settings.request_timeout}s"
                self._log(
                    logging.WARNING,
                    "Run timed out",
                    request_id=request.id,
                    full_frames=splitter.seq,
                )
                await self._send_error(sink, request.id, "LLM_TIMEOUT", message)
                return RunOutcome(
                    id=request.id,
                    status="timeout",
                    text=splitter.text,
                    error_code="LLM_TIMEOUT",
                    error_message=message,
                    full_frames=splitter.seq,
                    preview_sent=splitter.preview_sent,
                )
            except asyncio.CancelledError:
                if handle.reason is None:
                    raise
                self._log(
                    logging.INFO,
                    "Run cancelled",
                    request_id=request.id,
                    reason=handle.reason,
                    full_frames=splitter.seq,
                )
                return RunOutcome(
                    id=request.id,
                    status="cancelled",
                    text=splitter.text,
                    full_frames=splitter.seq,
                    preview_sent=splitter.preview_sent,
                )
        finally:
            self._registry.remove(request.id, handle)

        self._log(
            logging.INFO,
            "Run finished",
            request_id=request.id,
            status=outcome.status,
            elapsed_seconds=round(time.monotonic() - started_at, 3),
            full_frames=outcome.full_frames,
        )
        return outcome

    async def _execute(
        self,
        request: RequestEnvelope,
        sink: FrameSink,
        session: Session,
        splitter: DeltaSplitter,
    ) -> RunOutcome:
        try:
            messages, managed = self._build_messages(request, session)
            model = self._settings.default_model
            reserve = request.reserve if request.reserve > 0 else self._settings.default_reserve
            clipped = self._budgeter.clip(
                model,
                messages,
                self._provider.max_prompt_tokens(model),
                reserve,
            )
            self._log(
                logging.DEBUG,
                "Prompt clipped",
                request_id=request.id,
                input_messages=len(messages),
                output_messages=len(clipped),
                reserve=reserve,
            )
            options = ChatOptions(
                model=model,
                temperature=self._settings.temperature,
                max_tokens=reserve,
            )
            result = await self._provider.stream(clipped, options, splitter.on_delta)
        except BusinessError as exc:
            self._log(
                logging.ERROR,
                "Run failed",
                request_id=request.id,
                code=exc.code,
                error=exc.message,
                full_frames=splitter.seq,
            )
            await self._send_error(sink, request.id, exc.code, exc.message)
            return self._failed(request.id, splitter, exc.code, exc.message)
        except Exception as exc:
            self._log(
                logging.ERROR,
                "Run failed",
                request_id=request.id,
                code="LLM_ERROR",
                error=str(exc),
                full_frames=splitter.seq,
            )
            await self._send_error(sink, request.id, "LLM_ERROR", str(exc) or type(exc).__name__)
            return self._failed(request.id, splitter, "LLM_ERROR", str(exc))

        answer = splitter.text
        if result.usage:
            self._log(
                logging.INFO,
                "Token usage",
                request_id=request.id,
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
            )
        # 先写历史再发 done，客户端收到 done 后立即追问也能看到本轮
        if managed and answer.strip():
            session.append_turn(request.question, answer)
        await sink.send(ResponseEnvelope(type=DONE, id=request.id))
        return RunOutcome(
            id=request.id,
            status="done",
            text=answer,
            full_frames=splitter.seq,
            preview_sent=splitter.preview_sent,
        )

    def _build_messages(self, request: RequestEnvelope, session: Session) -> Tuple[List[ChatMessage], bool]:
        """组装本轮要发给 Provider 的消息。

        Returns:
            (消息列表, 是否由会话历史管理)。客户端自带 messages 时会话历史不参与也不更新。
        """

        system_prompt = build_system_prompt(session.system_prompt, request.intent)
        if request.messages:
            msgs = list(request.messages)
            if system_prompt and msgs[0].role != "system":
                msgs.insert(0, ChatMessage(role="system", content=system_prompt))
            return msgs, False
        if not request.question.strip():
            raise ValidationError(code="BAD_REQUEST", message="question or messages is required")
        return session.build_messages(request.question, system_prompt=system_prompt), True

    @staticmethod
    def _failed(request_id: str, splitter: DeltaSplitter, code: str, message: str) -> RunOutcome:
        return RunOutcome(
            id=request_id,
            status="error",
            text=splitter.text,
            error_code=code,
            error_message=message,
            full_frames=splitter.seq,
            preview_sent=splitter.preview_sent,
        )

    @staticmethod
    async def _send_error(sink: FrameSink, request_id: str, code: str, message: str) -> None:
        await sink.send(
            ResponseEnvelope(type=ERROR, id=request_id, error_code=code, error_message=message)
        )

    def _log(self, level: int, message: str, **fields) -> None:
        log_event(level, message, self._log_ctx, **fields)
