import asyncio

import pytest

from agent_gateway.domain.exceptions import ApiError, DuplicateRequestError
from agent_gateway.domain.models import (
    DONE,
    ERROR,
    FULL_DELTA,
    PREVIEW_DELTA,
    ChatMessage,
    RequestEnvelope,
)
from agent_gateway.domain.session import Session
from agent_gateway.orchestration.orchestrator import DeltaSplitter, Orchestrator
from agent_gateway.prompts import INTENT_HINTS

from conftest import FakeProvider, RecordingSink, make_settings


def run_request(provider, budgeter, request, session=None, **settings):
    orch = Orchestrator(provider, budgeter, make_settings(**settings))
    sink = RecordingSink()
    session = session if session is not None else Session(system_prompt="sys")

    async def scenario():
        return await orch.run(request, sink, session)

    outcome = asyncio.run(scenario())
    return outcome, sink, session, orch


def test_full_frames_are_numbered_from_one(budgeter):
    provider = FakeProvider(["Hel", "lo", " world"])
    outcome, sink, _, orch = run_request(
        provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="hi"), preview_delay=0
    )
    assert outcome.status == "done"
    fulls = sink.of_type(FULL_DELTA)
    assert [f.seq for f in fulls] == [1, 2, 3]
    assert "".join(f.text for f in fulls) == "Hello world"
    previews = sink.of_type(PREVIEW_DELTA)
    assert len(previews) == 1
    assert previews[0].seq == 1
    assert sink.frames[0].type == PREVIEW_DELTA
    assert sink.frames[-1].type == DONE
    assert all(f.id == "r1" for f in sink.frames)
    assert len(orch.registry) == 0


def test_preview_stops_at_first_sentence_end(budgeter):
    provider = FakeProvider(["Hi", " there. More", " text. End"])
    _, sink, _, _ = run_request(
        provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q")
    )
    previews = sink.of_type(PREVIEW_DELTA)
    assert [p.text for p in previews] == ["Hi there."]
    # 预览帧在触发它的那一帧 full 之前发出
    idx = sink.frames.index(previews[0])
    assert sink.frames[idx + 1].type == FULL_DELTA
    assert sink.frames[idx + 1].seq == 2


def test_no_preview_without_terminal_before_delay(budgeter):
    provider = FakeProvider(["abc", "def"])
    outcome, sink, _, _ = run_request(
        provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q")
    )
    assert sink.of_type(PREVIEW_DELTA) == []
    assert outcome.preview_sent is False


def test_empty_fragments_do_not_consume_seq(budgeter):
    provider = FakeProvider(["", "a", "", "b"])
    _, sink, _, _ = run_request(
        provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q")
    )
    assert [(f.seq, f.text) for f in sink.of_type(FULL_DELTA)] == [(1, "a"), (2, "b")]


def test_error_after_two_fragments(budgeter):
    provider = FakeProvider(["a", "b"], error=ApiError(code="API_ERROR", message="boom"))
    session = Session(system_prompt="sys")
    outcome, sink, session, _ = run_request(
        provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q"), session=session
    )
    assert outcome.status == "error"
    assert [f.type for f in sink.frames] == [FULL_DELTA, FULL_DELTA, ERROR]
    assert [f.seq for f in sink.frames[:2]] == [1, 2]
    assert sink.frames[-1].error_code == "API_ERROR"
    assert sink.frames[-1].error_message == "boom"
    assert sink.of_type(DONE) == []
    assert session.history == []


def test_unexpected_exception_becomes_llm_error(budgeter):
    provider = FakeProvider(["a"], error=RuntimeError("kaput"))
    outcome, sink, _, _ = run_request(
        provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q")
    )
    assert outcome.error_code == "LLM_ERROR"
    assert sink.frames[-1].type == ERROR
    assert sink.frames[-1].error_code == "LLM_ERROR"


def test_successful_run_appends_history(budgeter):
    provider = FakeProvider(["The answer", "."])
    session = Session(system_prompt="sys")
    run_request(provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="Q?"), session=session)
    assert session.history == [
        ChatMessage(role="user", content="Q?"),
        ChatMessage(role="assistant", content="The answer."),
    ]

    # 第二轮能看到第一轮的历史
    provider2 = FakeProvider(["ok"])
    run_request(provider2, budgeter, RequestEnvelope(type="agent/run", id="r2", question="again"), session=session)
    sent, _ = provider2.calls[0]
    assert [m.content for m in sent] == ["sys", "Q?", "The answer.", "again"]


def test_empty_answer_is_not_recorded(budgeter):
    session = Session(system_prompt="sys")
    outcome, sink, _, _ = run_request(
        FakeProvider([]), budgeter, RequestEnvelope(type="agent/run", id="r1", question="q"), session=session
    )
    assert outcome.status == "done"
    assert sink.frames[-1].type == DONE
    assert session.history == []


def test_client_messages_bypass_session_history(budgeter):
    session = Session(system_prompt="sys", history=[ChatMessage(role="user", content="old")])
    provider = FakeProvider(["x"])
    request = RequestEnvelope(
        type="agent/run",
        id="r1",
        messages=[ChatMessage(role="user", content="from client")],
    )
    outcome, _, session, _ = run_request(provider, budgeter, request, session=session)
    assert outcome.status == "done"
    sent, _ = provider.calls[0]
    assert [(m.role, m.content) for m in sent] == [("system", "sys"), ("user", "from client")]
    assert session.history == [ChatMessage(role="user", content="old")]


def test_intent_adds_hint_to_system_prompt(budgeter):
    provider = FakeProvider(["x"])
    run_request(provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q", intent="scaffold"))
    sent, _ = provider.calls[0]
    assert sent[0].role == "system"
    assert INTENT_HINTS["scaffold"] in sent[0].content


def test_reserve_is_used_as_max_tokens(budgeter):
    provider = FakeProvider(["x"])
    run_request(provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q", reserve=42))
    _, options = provider.calls[0]
    assert options.max_tokens == 42

    provider = FakeProvider(["x"])
    run_request(provider, budgeter, RequestEnvelope(type="agent/run", id="r2", question="q"), default_reserve=77)
    _, options = provider.calls[0]
    assert options.max_tokens == 77


def test_budget_error_is_reported_without_calling_provider(budgeter):
    provider = FakeProvider(["x"], context_window=50)
    outcome, sink, _, _ = run_request(
        provider, budgeter, RequestEnvelope(type="agent/run", id="r1", question="q", reserve=50)
    )
    assert outcome.error_code == "BUDGET_ERROR"
    assert [f.type for f in sink.frames] == [ERROR]
    assert provider.calls == []


def test_missing_question_is_bad_request(budgeter):
    provider = FakeProvider(["x"])
    outcome, sink, _, _ = run_request(provider, budgeter, RequestEnvelope(type="agent/run", id="r1"))
    assert outcome.error_code == "BAD_REQUEST"
    assert sink.frames[-1].error_code == "BAD_REQUEST"


def test_cancel_stops_run_without_terminal_frame(budgeter):
    provider = FakeProvider(["partial"], hang=True)
    orch = Orchestrator(provider, budgeter, make_settings())
    sink = RecordingSink()
    session = Session(system_prompt="sys")

    async def scenario():
        task = asyncio.create_task(orch.run(RequestEnvelope(type="agent/run", id="r1", question="q"), sink, session))
        await provider.started.wait()
        assert orch.cancel("r1") is True
        assert orch.cancel("r1") is False
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.status == "cancelled"
    assert provider.cancelled is True
    assert [f.type for f in sink.frames] == [FULL_DELTA]
    assert session.history == []
    assert len(orch.registry) == 0


def test_timeout_sends_llm_timeout(budgeter):
    provider = FakeProvider(["slow"], hang=True)
    outcome, sink, session, orch = run_request(
        provider,
        budgeter,
        RequestEnvelope(type="agent/run", id="r1", question="q"),
        request_timeout=0.1,
    )
    assert outcome.status == "timeout"
    assert provider.cancelled is True
    assert sink.frames[-1].type == ERROR
    assert sink.frames[-1].error_code == "LLM_TIMEOUT"
    assert session.history == []
    assert len(orch.registry) == 0


def test_duplicate_active_id_is_rejected(budgeter):
    provider = FakeProvider(["x"], hang=True)
    orch = Orchestrator(provider, budgeter, make_settings())
    sink = RecordingSink()
    session = Session()

    async def scenario():
        first = asyncio.create_task(orch.run(RequestEnvelope(type="agent/run", id="r1", question="a"), sink, session))
        await provider.started.wait()
        second = await orch.run(RequestEnvelope(type="agent/run", id="r1", question="b"), sink, session)
        orch.cancel("r1")
        return await first, second

    first, second = asyncio.run(scenario())
    assert second.status == "error"
    assert second.error_code == "DUPLICATE_REQUEST"
    assert first.status == "cancelled"
    assert len(provider.calls) == 1


def test_cancel_before_start_skips_provider(budgeter):
    provider = FakeProvider(["x"])
    orch = Orchestrator(provider, budgeter, make_settings())
    sink = RecordingSink()
    session = Session()

    async def scenario():
        handle = orch.admit("r1")
        assert orch.cancel("r1") is True
        return await orch.run(RequestEnvelope(type="agent/run", id="r1", question="q"), sink, session, handle)

    outcome = asyncio.run(scenario())
    assert outcome.status == "cancelled"
    assert provider.calls == []
    assert sink.frames == []
    assert len(orch.registry) == 0


def test_admit_rejects_active_id(budgeter):
    orch = Orchestrator(FakeProvider(), budgeter, make_settings())
    orch.admit("r1")
    with pytest.raises(DuplicateRequestError):
        orch.admit("r1")
    orch.cancel("r1")
    orch.admit("r1")


def test_cancel_all_stops_every_run(budgeter):
    provider = FakeProvider(["x"], hang=True)
    orch = Orchestrator(provider, budgeter, make_settings())
    sink = RecordingSink()
    session = Session()

    async def scenario():
        tasks = [
            asyncio.create_task(orch.run(RequestEnvelope(type="agent/run", id=rid, question="q"), sink, session))
            for rid in ("a", "b")
        ]
        while len(provider.calls) < 2:
            await asyncio.sleep(0.01)
        assert orch.cancel_all("disconnect") == 2
        return await asyncio.gather(*tasks)

    outcomes = asyncio.run(scenario())
    assert [o.status for o in outcomes] == ["cancelled", "cancelled"]
    assert sink.of_type(ERROR) == []


def test_splitter_preview_by_delay():
    sink = RecordingSink()
    now = [0.0]
    splitter = DeltaSplitter("r1", sink, started_at=0.0, preview_delay=0.3, clock=lambda: now[0])

    async def scenario():
        await splitter.on_delta("no terminal")
        now[0] = 0.5
        await splitter.on_delta(" yet")
        await splitter.on_delta(" still. none")

    asyncio.run(scenario())
    previews = sink.of_type(PREVIEW_DELTA)
    assert [p.text for p in previews] == ["no terminal yet"]
    assert splitter.seq == 3
    assert splitter.text == "no terminal yet still. none"
