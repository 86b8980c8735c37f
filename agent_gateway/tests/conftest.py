import asyncio
from types import SimpleNamespace

import pytest

from agent_gateway.context.budget import ContextBudgeter
from agent_gateway.context.tokenizer import Tokenizer
from agent_gateway.domain.models import StreamResult


class CharEncoding:
    """一个字符一个 token 的确定性编码。"""

    def encode(self, text, disallowed_special=()):
        return [ord(ch) for ch in text]

    def decode_bytes(self, ids):
        return "".join(chr(i) for i in ids).encode("utf-8")


class ByteEncoding:
    """一个 UTF-8 字节一个 token，用来制造多字节字符被截断的情况。"""

    def encode(self, text, disallowed_special=()):
        return list(text.encode("utf-8"))

    def decode_bytes(self, ids):
        return bytes(ids)


class FakeProvider:
    name = "fake"

    def __init__(self, fragments=(), error=None, delay=0.0, hang=False, context_window=4096):
        self.fragments = list(fragments)
        self.error = error
        self.delay = delay
        self.hang = hang
        self.context_window = context_window
        self.calls = []
        self.cancelled = False
        self.started = asyncio.Event()

    def max_prompt_tokens(self, model):
        return self.context_window

    async def stream(self, messages, options, on_delta):
        self.calls.append((list(messages), options))
        try:
            for frag in self.fragments:
                if self.delay:
                    await asyncio.sleep(self.delay)
                await on_delta(frag)
                self.started.set()
            self.started.set()
            if self.hang:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return StreamResult(text="".join(self.fragments), model="fake-model", finish_reason="stop")


class RecordingSink:
    def __init__(self):
        self.frames = []

    async def send(self, frame):
        self.frames.append(frame)

    def of_type(self, frame_type):
        return [f for f in self.frames if f.type == frame_type]


def make_settings(**overrides):
    values = dict(
        host="127.0.0.1",
        port=0,
        ws_path="/ws",
        auth_tokens=[],
        default_model="chat",
        default_reserve=100,
        max_history_turns=50,
        temperature=0.3,
        preview_delay=10.0,
        request_timeout=5.0,
        system_prompt="You are a test assistant.",
        heartbeat_interval=15.0,
        heartbeat_timeout=5.0,
        enable_tools=False,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def char_tokenizer():
    return Tokenizer(encoding_loader=lambda model: CharEncoding())


@pytest.fixture
def budgeter(char_tokenizer):
    return ContextBudgeter(char_tokenizer)
