import asyncio

import pytest
from langchain_core.exceptions import OutputParserException

from src.chat.errors import TurnError
from src.chat.events import EventKind
from src.chat.turn import TurnController
from src.config.configuration import SummarizationSettings, TurnSettings
from src.summarization.scheduler import SummaryScheduler


class ScriptedAgent:
    def __init__(self, chunks, *, error=None, tools=()):
        self.chunks = list(chunks)
        self.error = error
        self.tools = list(tools)
        self.history = None

    async def run(self, query, token_sink, *, history=(), tool_sink=None):
        self.history = list(history)
        for name, result in self.tools:
            tool_sink(name, result)
        for chunk in self.chunks:
            token_sink(chunk)
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return "".join(self.chunks).partition("AI:")[2]


class BlockingAgent:
    """Streams its chunks, then waits until cancelled."""

    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.forwarded = asyncio.Event()

    async def run(self, query, token_sink, *, history=(), tool_sink=None):
        for chunk in self.chunks:
            token_sink(chunk)
        self.forwarded.set()
        await asyncio.Event().wait()


class RecordingRegistry:
    def __init__(self):
        self.tasks = []

    def register_summary_task(self, message_ids):
        self.tasks.append(list(message_ids))
        return True


@pytest.mark.asyncio
async def test_turn_streams_and_persists(store, event_sink):
    session = await store.create_session()
    registry = RecordingRegistry()
    agent = ScriptedAgent(["先查看", "血糖记录。A", "I: 平均值正常", "。"])
    controller = TurnController(store, agent, registry)

    result = await controller.run_turn(session.id, "我的血糖怎么样？", event_sink)

    assert event_sink.text(EventKind.REASONING_CHUNK) == "先查看血糖记录。"
    assert event_sink.text(EventKind.ANSWER_CHUNK) == " 平均值正常。"
    assert event_sink.kinds()[-1] is EventKind.DONE
    assert event_sink.kinds().count(EventKind.DONE) == 1
    assert EventKind.ERROR not in event_sink.kinds()

    messages = await store.get_messages(session.id)
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[0].content == "我的血糖怎么样？"
    assert messages[1].content == " 平均值正常。"
    assert messages[1].reasoning_trace == "先查看血糖记录。"

    assert result.partial is False
    assert registry.tasks == [[messages[0].id, messages[1].id]]


@pytest.mark.asyncio
async def test_parse_failure_without_marker_uses_agent_output(store, event_sink):
    session = await store.create_session()
    registry = RecordingRegistry()
    error = OutputParserException("Could not parse LLM output", llm_output="直接给出的回答")
    agent = ScriptedAgent(["直接给出的回答"], error=error)
    controller = TurnController(store, agent, registry)

    result = await controller.run_turn(session.id, "hi", event_sink)

    assert result.partial is True
    assert result.answer == "直接给出的回答"
    assert EventKind.ERROR not in event_sink.kinds()
    assert event_sink.kinds()[-2:] == [EventKind.ANSWER_CHUNK, EventKind.DONE]

    messages = await store.get_messages(session.id)
    assert messages[1].content == "直接给出的回答"
    assert len(registry.tasks) == 1


@pytest.mark.asyncio
async def test_parse_failure_keeps_streamed_answer(store, event_sink):
    session = await store.create_session()
    error = OutputParserException("Could not parse LLM output", llm_output="ignored")
    agent = ScriptedAgent(["think AI:", " part"], error=error)
    controller = TurnController(store, agent, RecordingRegistry())

    result = await controller.run_turn(session.id, "hi", event_sink)

    assert result.answer == " part"
    messages = await store.get_messages(session.id)
    assert messages[1].content == " part"
    assert messages[1].reasoning_trace == "think "


@pytest.mark.asyncio
async def test_cancellation_persists_partial_answer(store, event_sink):
    session = await store.create_session()
    registry = RecordingRegistry()
    agent = BlockingAgent(["reasoning AI:", "第一段", "第二段"])
    controller = TurnController(store, agent, registry)

    task = asyncio.create_task(controller.run_turn(session.id, "question", event_sink))
    await agent.forwarded.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    messages = await store.get_messages(session.id)
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[1].content == event_sink.text(EventKind.ANSWER_CHUNK) == "第一段第二段"
    assert messages[1].reasoning_trace == "reasoning "
    assert event_sink.kinds().count(EventKind.DONE) == 1
    assert EventKind.ERROR not in event_sink.kinds()
    assert registry.tasks == [[messages[0].id, messages[1].id]]


@pytest.mark.asyncio
async def test_agent_failure_is_fatal_and_saves_nothing(store, event_sink):
    session = await store.create_session()
    registry = RecordingRegistry()
    agent = ScriptedAgent(["partial AI: text"], error=RuntimeError("upstream closed"))
    controller = TurnController(store, agent, registry)

    with pytest.raises(TurnError):
        await controller.run_turn(session.id, "hi", event_sink)

    assert event_sink.kinds()[-2:] == [EventKind.ERROR, EventKind.DONE]
    assert event_sink.kinds().count(EventKind.DONE) == 1
    assert await store.get_messages(session.id) == []
    assert registry.tasks == []


@pytest.mark.asyncio
async def test_agent_timeout_is_fatal(store, event_sink):
    session = await store.create_session()
    agent = BlockingAgent(["still thinking"])
    controller = TurnController(store, agent, RecordingRegistry(), settings=TurnSettings(agent_timeout=0.05))

    with pytest.raises(TurnError):
        await controller.run_turn(session.id, "hi", event_sink)

    assert event_sink.kinds()[-2:] == [EventKind.ERROR, EventKind.DONE]
    assert await store.get_messages(session.id) == []


@pytest.mark.asyncio
async def test_storage_failure_is_fatal(store, event_sink):
    agent = ScriptedAgent(["r AI: a"])
    controller = TurnController(store, agent, RecordingRegistry())

    with pytest.raises(TurnError):
        await controller.run_turn("no-such-session", "hi", event_sink)

    assert event_sink.kinds()[-2:] == [EventKind.ERROR, EventKind.DONE]
    assert event_sink.kinds().count(EventKind.DONE) == 1


@pytest.mark.asyncio
async def test_no_answer_saves_user_message_only(store, event_sink):
    session = await store.create_session()
    registry = RecordingRegistry()
    error = OutputParserException("Could not parse LLM output", llm_output="")
    agent = ScriptedAgent([], error=error)
    controller = TurnController(store, agent, registry)

    result = await controller.run_turn(session.id, "hi", event_sink)

    assert result.assistant_message_id is None
    messages = await store.get_messages(session.id)
    assert [message.role for message in messages] == ["user"]
    assert registry.tasks == [[result.user_message_id]]
    assert event_sink.kinds() == [EventKind.DONE]


@pytest.mark.asyncio
async def test_history_prefers_summaries(store, event_sink):
    session = await store.create_session()
    first = await store.append_message(session_id=session.id, role="user", content="long question " * 10)
    await store.append_message(session_id=session.id, role="assistant", content="short answer")
    await store.update_message(first.id, "summary", "question summary")

    agent = ScriptedAgent(["AI: ok"])
    controller = TurnController(store, agent, RecordingRegistry())
    await controller.run_turn(session.id, "follow up", event_sink)

    assert [record.memory_content for record in agent.history] == ["question summary", "short answer"]


@pytest.mark.asyncio
async def test_tool_results_are_forwarded_and_saved(store, event_sink):
    session = await store.create_session()
    agent = ScriptedAgent(["AI: 42"], tools=[("calculator", ["6*7=42"])])
    controller = TurnController(store, agent, RecordingRegistry())

    await controller.run_turn(session.id, "6*7?", event_sink)

    assert event_sink.kinds()[0] is EventKind.TOOL_CALL_RESULT
    messages = await store.get_messages(session.id)
    assert messages[1].tool_call_results == [{"name": "calculator", "result": ["6*7=42"]}]


@pytest.mark.asyncio
async def test_full_summary_queue_does_not_block_turn(store, event_sink):
    session = await store.create_session()
    scheduler = SummaryScheduler(store, summarizer=None, settings=SummarizationSettings(queue_size=1))
    assert scheduler.register_summary_task(["earlier"]) is True

    controller = TurnController(store, ScriptedAgent(["AI: fine"]), scheduler)
    result = await asyncio.wait_for(controller.run_turn(session.id, "hi", event_sink), timeout=5)

    assert result.answer == " fine"
    assert scheduler.dropped_tasks == 1
    assert scheduler.queue_size == 1


@pytest.mark.asyncio
async def test_cancellation_during_save_keeps_both_rows(store, event_sink, monkeypatch):
    session = await store.create_session()
    original_append = store.append_message
    reached = asyncio.Event()

    async def slow_append(*, session_id, role, content):
        if role == "assistant":
            reached.set()
            await asyncio.sleep(0.05)
        return await original_append(session_id=session_id, role=role, content=content)

    monkeypatch.setattr(store, "append_message", slow_append)
    controller = TurnController(store, ScriptedAgent(["r AI: 已保存"]), RecordingRegistry())

    task = asyncio.create_task(controller.run_turn(session.id, "question", event_sink))
    await reached.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    messages = await store.get_messages(session.id)
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[1].content == " 已保存"
    assert messages[1].reasoning_trace == "r "
    assert event_sink.kinds().count(EventKind.DONE) == 1
    assert EventKind.ERROR not in event_sink.kinds()


@pytest.mark.asyncio
async def test_unserialisable_tool_result_is_a_save_failure(store, event_sink):
    session = await store.create_session()
    registry = RecordingRegistry()
    agent = ScriptedAgent(["AI: done"], tools=[("opaque", [object()])])
    controller = TurnController(store, agent, registry)

    with pytest.raises(TurnError):
        await controller.run_turn(session.id, "hi", event_sink)

    assert event_sink.kinds()[-2:] == [EventKind.ERROR, EventKind.DONE]
    assert event_sink.kinds().count(EventKind.DONE) == 1
    assert event_sink.events[-2][1] == {"error": "failed to save conversation"}
    assert registry.tasks == []


class SilentAgent:
    """Returns its answer without streaming anything."""

    async def run(self, query, token_sink, *, history=(), tool_sink=None):
        return "final"


@pytest.mark.asyncio
async def test_returned_answer_is_used_when_nothing_streamed(store, event_sink):
    session = await store.create_session()
    controller = TurnController(store, SilentAgent(), RecordingRegistry())

    result = await controller.run_turn(session.id, "hi", event_sink)

    assert result.answer == "final"
    assert event_sink.text(EventKind.ANSWER_CHUNK) == "final"
    assert event_sink.kinds()[-1] is EventKind.DONE
    messages = await store.get_messages(session.id)
    assert [message.content for message in messages] == ["hi", "final"]
