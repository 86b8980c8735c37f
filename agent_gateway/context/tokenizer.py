"""Token 计数与截断适配层。

基于 tiktoken 做近似计数：已知模型使用其专属编码，未知模型回退到
cl100k_base。计数只要求"大致正确"，每条消息额外加一个固定开销
（MESSAGE_OVERHEAD）来近似 role/元数据占用的 token。

编码加载是可插拔的（encoding_loader），测试里可以注入确定性的假编码。
当编码本身加载失败时（例如离线环境拿不到 BPE 文件），退化为按 UTF-8
字节数估算，保证计数永远不会抛错。
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Any, Callable, Dict, Iterable, Optional

import tiktoken

from agent_gateway.domain.models import ChatMessage


DEFAULT_ENCODING = "cl100k_base"
MESSAGE_OVERHEAD = 4
ELLIPSIS = "…"
BYTES_PER_TOKEN = 4

EncodingLoader = Callable[[str], Any]

_log = logging.getLogger("agent_gateway.tokenizer")


def load_tiktoken_encoding(model: str, default_encoding: str = DEFAULT_ENCODING) -> Any:
    """按模型名取 tiktoken 编码，未知模型回退到默认编码。"""

    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(default_encoding)


class Tokenizer:
    """近似 token 计数器。

    - count(model, text): 文本的 token 数，非空文本至少为 1。
    - count_message / count_messages: 额外加上每条消息的固定开销。
    - truncate(model, text, max_tokens): 截断到最多 max_tokens 个 token，
      发生截断时在末尾追加省略号。
    """

    def __init__(
        self,
        encoding_loader: Optional[EncodingLoader] = None,
        message_overhead: int = MESSAGE_OVERHEAD,
    ):
        self._loader = encoding_loader or load_tiktoken_encoding
        self.message_overhead = message_overhead
        self._cache: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def encoding_for(self, model: str) -> Optional[Any]:
        with self._lock:
            if model in self._cache:
                return self._cache[model]
        try:
            enc = self._loader(model)
        except Exception as exc:
            _log.warning(
                "Tokenizer encoding unavailable, using byte estimate",
                extra={"extra": {"model": model, "error": str(exc)}},
            )
            enc = None
        with self._lock:
            self._cache[model] = enc
        return enc

    def count(self, model: str, text: str) -> int:
        if not text:
            return 0
        enc = self.encoding_for(model)
        if enc is None:
            return _estimate_by_bytes(text)
        return max(1, len(enc.encode(text, disallowed_special=())))

    def count_message(self, model: str, message: ChatMessage) -> int:
        return self.count(model, message.content) + self.message_overhead

    def count_messages(self, model: str, messages: Iterable[ChatMessage]) -> int:
        return sum(self.count_message(model, m) for m in messages)

    def truncate(self, model: str, text: str, max_tokens: int) -> str:
        """把 text 截断到最多 max_tokens 个 token（近似）。

        优先按编码边界截断；若边界落在多字节字符中间导致解码出非法 UTF-8，
        则回退到按字符的粗截断。
        """

        if max_tokens <= 0 or not text:
            return ""
        enc = self.encoding_for(model)
        if enc is None:
            if _estimate_by_bytes(text) <= max_tokens:
                return text
            return self._rough_cut(model, text, max_tokens) + ELLIPSIS
        ids = enc.encode(text, disallowed_special=())
        if len(ids) <= max_tokens:
            return text
        try:
            out = enc.decode_bytes(ids[:max_tokens]).decode("utf-8")
        except UnicodeDecodeError:
            out = self._rough_cut(model, text, max_tokens)
        return out + ELLIPSIS

    def _rough_cut(self, model: str, text: str, max_tokens: int) -> str:
        """按字符二分，找到计数不超过 max_tokens 的最长前缀。"""

        lo, hi = 0, min(len(text), max_tokens * BYTES_PER_TOKEN)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.count(model, text[:mid]) <= max_tokens:
                lo = mid
            else:
                hi = mid - 1
        return text[:lo]


def _estimate_by_bytes(text: str) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8")) / BYTES_PER_TOKEN))
