"""WebSocket 连接网关。

职责：
- 握手阶段校验 ?token=，缺失或无效直接返回 401，不升级连接。
- 每个连接一个读循环：逐帧解码，坏帧记录日志后丢弃，连接继续。
- agent/run 先在读循环里同步登记取消句柄，再起一个独立任务执行，不阻塞读循环；agent/cancel 同步转给
  Orchestrator.cancel；agent/reset 清空会话；tools/* 转给工具登记表。
- 同一连接的所有出站写入（包括心跳 ping）共用一把锁，保证帧不交错。
- 独立的心跳任务按固定间隔 ping，超时未收到 pong 则关闭连接。

Usage:
    gateway = Gateway(settings, provider)
    asyncio.run(gateway.serve_forever())
"""

import asyncio
import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Optional, Set, Union
from urllib.parse import parse_qs, urlsplit
from uuid import uuid4

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from agent_gateway.context.budget import ContextBudgeter
from agent_gateway.context.tokenizer import Tokenizer
from agent_gateway.domain.exceptions import AuthError, BusinessError, DecodeError, DuplicateRequestError
from agent_gateway.domain.models import (
    CANCEL,
    ERROR,
    RESET,
    RUN,
    TOOL_CALL_RESULT,
    TOOLS_CALL,
    TOOLS_LIST,
    RequestEnvelope,
    ResponseEnvelope,
)
from agent_gateway.domain.session import Session
from agent_gateway.infrastructure.logging.logger import log_event, logger
from agent_gateway.orchestration.cancellation import CancelHandle
from agent_gateway.orchestration.orchestrator import Orchestrator
from agent_gateway.providers.base import CompletionProvider
from agent_gateway.tools.definitions import ToolCall
from agent_gateway.tools.registry import ToolRegistry
from agent_gateway.transport.protocol import decode_request, encode_response


class FrameWriter:
    """串行化某个连接上的所有出站写入。"""

    def __init__(self, connection: ServerConnection, log_ctx: dict):
        self._conn = connection
        self._lock = asyncio.Lock()
        self._log_ctx = log_ctx

    async def send(self, frame: ResponseEnvelope) -> None:
        data = encode_response(frame)
        async with self._lock:
            try:
                await self._conn.send(data)
            except ConnectionClosed:
                log_event(
                    logging.DEBUG,
                    "Dropped frame on closed connection",
                    self._log_ctx,
                    frame_type=frame.type,
                    request_id=frame.id,
                )

    async def ping(self) -> "asyncio.Future[float]":
        async with self._lock:
            return await self._conn.ping()


@dataclass
class ConnectionState:
    """单个连接独占的状态。"""

    connection_id: str
    connection: ServerConnection
    writer: FrameWriter
    session: Session
    orchestrator: Orchestrator
    tasks: Set[asyncio.Task] = field(default_factory=set)

    @property
    def log_ctx(self) -> dict:
        return {"connection_id": self.connection_id}


class Gateway:
    def __init__(
        self,
        settings,
        provider: CompletionProvider,
        budgeter: Optional[ContextBudgeter] = None,
        tools: Optional[ToolRegistry] = None,
    ):
        self._settings = settings
        self._provider = provider
        self._budgeter = budgeter or ContextBudgeter(Tokenizer())
        self._tools = tools
        self._connections: Set[str] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def start(self, host: Optional[str] = None, port: Optional[int] = None):
        """返回 websockets 的 serve 对象，可直接 `async with` 使用。"""

        return serve(
            self._handle_connection,
            host or self._settings.host,
            self._settings.port if port is None else port,
            process_request=self._process_request,
            ping_interval=None,
        )

    async def serve_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """启动监听；给定 stop 事件时在事件被设置后关闭服务并返回。"""

        async with self.start() as server:
            self._log_listening(server)
            if stop is None:
                await server.serve_forever()
            else:
                await stop.wait()
        log_event(logging.INFO, "Gateway stopped", {})

    def _log_listening(self, server: Server) -> None:
        for sock in server.sockets:
            host, port = sock.getsockname()[:2]
            log_event(
                logging.INFO,
                "Gateway listening",
                {},
                url=f"ws://{host}:{port}{self._settings.ws_path}",
            )

    # ------------------------------------------------------------------
    # 握手与鉴权
    # ------------------------------------------------------------------

    def authenticate(self, path: str) -> str:
        """从握手路径中取出并校验 token，失败抛 AuthError。"""

        parts = urlsplit(path)
        if parts.path != self._settings.ws_path:
            raise AuthError(code="NOT_FOUND", message="unknown path", status=HTTPStatus.NOT_FOUND)
        token = (parse_qs(parts.query).get("token") or [""])[0]
        if not token:
            raise AuthError(code="UNAUTHORIZED", message="missing token", status=HTTPStatus.UNAUTHORIZED)
        allowed = self._settings.auth_tokens
        if allowed and token not in allowed:
            raise AuthError(code="UNAUTHORIZED", message="invalid token", status=HTTPStatus.UNAUTHORIZED)
        return token

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        try:
            self.authenticate(request.path)
        except AuthError as exc:
            log_event(
                logging.WARNING,
                "Connection rejected",
                {},
                remote=str(connection.remote_address),
                reason=exc.message,
            )
            return connection.respond(exc.extra["status"], exc.message + "\n")
        return None

    # ------------------------------------------------------------------
    # 连接生命周期
    # ------------------------------------------------------------------

    async def _handle_connection(self, connection: ServerConnection) -> None:
        connection_id = f"conn-{uuid4().hex[:12]}"
        log_ctx = {"connection_id": connection_id}
        state = ConnectionState(
            connection_id=connection_id,
            connection=connection,
            writer=FrameWriter(connection, log_ctx),
            session=Session(
                system_prompt=self._settings.system_prompt,
                max_turns=self._settings.max_history_turns,
            ),
            orchestrator=Orchestrator(
                self._provider,
                self._budgeter,
                self._settings,
                log_ctx=log_ctx,
            ),
        )
        self._connections.add(connection_id)
        log_event(logging.INFO, "Client connected", log_ctx, remote=str(connection.remote_address))

        heartbeat = asyncio.create_task(self._heartbeat(state))
        try:
            async for raw in connection:
                await self.dispatch(state, raw)
        except ConnectionClosed as exc:
            log_event(logging.INFO, "Connection closed with error", log_ctx, reason=str(exc))
        finally:
            heartbeat.cancel()
            cancelled = state.orchestrator.cancel_all("disconnect")
            await asyncio.gather(heartbeat, *state.tasks, return_exceptions=True)
            self._connections.discard(connection_id)
            log_event(logging.INFO, "Client disconnected", log_ctx, cancelled_requests=cancelled)

    async def dispatch(self, state: ConnectionState, raw: Union[str, bytes]) -> None:
        """按帧类型分发；本方法不会等待 run 完成。"""

        try:
            request = decode_request(raw)
        except DecodeError as exc:
            log_event(logging.WARNING, "Dropped malformed frame", state.log_ctx, error=exc.message)
            return

        if request.type == RUN:
            if not request.id:
                log_event(logging.WARNING, "Dropped run frame without id", state.log_ctx)
                return
            try:
                handle = state.orchestrator.admit(request.id)
            except DuplicateRequestError as exc:
                log_event(logging.WARNING, "Duplicate request id", state.log_ctx, request_id=request.id)
                await state.writer.send(
                    ResponseEnvelope(type=ERROR, id=request.id, error_code=exc.code, error_message=exc.message)
                )
                return
            self._spawn(state, self._run(state, request, handle))
        elif request.type == CANCEL:
            state.orchestrator.cancel(request.id)
        elif request.type == RESET:
            state.session.reset()
            log_event(logging.INFO, "Session reset", state.log_ctx)
        elif request.type in (TOOLS_LIST, TOOLS_CALL):
            self._spawn(state, self._handle_tools(state, request))
        else:
            log_event(logging.WARNING, "Unknown frame type", state.log_ctx, frame_type=request.type)

    def _spawn(self, state: ConnectionState, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        state.tasks.add(task)
        task.add_done_callback(state.tasks.discard)
        return task

    async def _run(self, state: ConnectionState, request: RequestEnvelope, handle: CancelHandle) -> None:
        try:
            await state.orchestrator.run(request, state.writer, state.session, handle)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error in run", extra={"extra": {**state.log_ctx, "request_id": request.id}})

    # ------------------------------------------------------------------
    # 工具
    # ------------------------------------------------------------------

    async def _handle_tools(self, state: ConnectionState, request: RequestEnvelope) -> None:
        if self._tools is None or not self._settings.enable_tools or not request.allow_tools:
            await self._send_tool_error(state, request, "TOOLS_DISABLED", "tools are not enabled")
            return

        if request.type == TOOLS_LIST:
            await state.writer.send(
                ResponseEnvelope(
                    type=TOOL_CALL_RESULT,
                    id=request.id,
                    result={"tools": [t.to_schema() for t in self._tools.list_tools()]},
                    confirm_token=request.confirm_token,
                )
            )
            return

        name = str(request.context.get("tool") or "")
        arguments = request.context.get("arguments") or {}
        if not isinstance(arguments, dict):
            await self._send_tool_error(state, request, "BAD_REQUEST", "tool arguments must be an object")
            return
        call = ToolCall(id=request.id, name=name, arguments=arguments)
        log_event(logging.INFO, "Tool call received", state.log_ctx, request_id=request.id, tool_name=name)
        try:
            result = await asyncio.to_thread(self._tools.call, call)
        except BusinessError as exc:
            await self._send_tool_error(state, request, exc.code, exc.message)
            return
        await state.writer.send(
            ResponseEnvelope(
                type=TOOL_CALL_RESULT,
                id=request.id,
                result=result.to_payload(),
                confirm_token=request.confirm_token,
            )
        )

    @staticmethod
    async def _send_tool_error(state: ConnectionState, request: RequestEnvelope, code: str, message: str) -> None:
        await state.writer.send(
            ResponseEnvelope(type=ERROR, id=request.id, error_code=code, error_message=message)
        )

    # ------------------------------------------------------------------
    # 心跳
    # ------------------------------------------------------------------

    async def _heartbeat(self, state: ConnectionState) -> None:
        interval = self._settings.heartbeat_interval
        timeout = self._settings.heartbeat_timeout
        while True:
            await asyncio.sleep(interval)
            try:
                pong = await state.writer.ping()
                await asyncio.wait_for(pong, timeout=timeout)
            except asyncio.TimeoutError:
                log_event(logging.WARNING, "Heartbeat timed out", state.log_ctx, timeout=timeout)
                await state.connection.close(1011, "heartbeat timeout")
                return
            except ConnectionClosed:
                return
