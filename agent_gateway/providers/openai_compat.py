"""OpenAI 兼容接口的流式 Provider 适配器（DeepSeek / Kimi）。

本模块负责：

1. 接收统一的 ChatMessage 列表与 ChatOptions。
2. 将其转换为 /chat/completions 的流式请求（stream=true）。
3. 逐行解析 SSE 响应，把每个非空 delta 交给 on_delta。
4. 把网络/限流/服务端错误包装为统一的 ProviderError 子类。

取消由 asyncio 负责：调用方取消任务时，CancelledError 会从
aiter_lines() 处抛出，async with 会关闭底层连接。
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from agent_gateway.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ChatUsage, StreamResult
from agent_gateway.providers.base import DeltaHandler
from agent_gateway.providers.registry import ModelConfig, ProviderConfig


class OpenAICompatClient:
    """OpenAI 兼容 Provider 客户端。

    - name: Provider 名称（供日志使用）。
    - stream: 流式调用入口，返回 StreamResult。
    """

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        http_timeout: float = 30.0,
    ):
        self.name = config.name
        self._config = config
        self._api_key = api_key
        self._base_url = (base_url or config.base_url).rstrip("/")
        self._http_timeout = http_timeout

    def max_prompt_tokens(self, model: str) -> int:
        return self._config.model(model).context_window

    async def stream(
        self,
        messages: List[ChatMessage],
        options: ChatOptions,
        on_delta: DeltaHandler,
    ) -> StreamResult:
        if not messages:
            raise ValidationError(code="BAD_REQUEST", message="messages is empty")
        if not self._api_key:
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"{self.name.upper()}_API_KEY not set",
            )
        model_cfg = self._config.model(options.model)
        payload = self._build_payload(messages, options, model_cfg)
        result = StreamResult(model=model_cfg.provider_model)
        pieces: List[str] = []
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                        "Accept": "text/event-stream",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit")
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=body.decode("utf-8", errors="replace"),
                            http_status=resp.status_code,
                        )
                    async for line in resp.aiter_lines():
                        chunk = self._parse_sse_line(line)
                        if chunk is None:
                            continue
                        if chunk == "[DONE]":
                            break
                        result.chunk_count += 1
                        for frag in self._apply_chunk(chunk, result):
                            pieces.append(frag)
                            await on_delta(frag)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时、流被中途断开等
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__) from e
        result.text = "".join(pieces)
        return result

    def _build_payload(
        self,
        messages: List[ChatMessage],
        options: ChatOptions,
        model_cfg: ModelConfig,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": options.temperature if options.temperature is not None else model_cfg.default_temperature,
            "max_tokens": options.max_tokens or model_cfg.max_tokens,
            "stream": True,
        }
        if options.stop:
            payload["stop"] = list(options.stop)
        return payload

    @staticmethod
    def _parse_sse_line(line: str) -> Any:
        """解析一行 SSE，返回 JSON 对象、"[DONE]" 或 None（空行/注释/坏数据）。"""

        data_str = line.strip()
        if not data_str or data_str.startswith(":"):
            return None
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        if data_str == "[DONE]":
            return data_str
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _apply_chunk(data: Dict[str, Any], result: StreamResult) -> List[str]:
        frags: List[str] = []
        for ch in data.get("choices") or []:
            delta = ch.get("delta") or {}
            frag = delta.get("content") or ""
            if frag:
                frags.append(frag)
            if ch.get("finish_reason"):
                result.finish_reason = ch["finish_reason"]
        usage_raw = data.get("usage") or {}
        if usage_raw:
            result.usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        if data.get("model"):
            result.model = data["model"]
        return frags
