import copy
import json
import re

import pytest

from chatmate.agent import Agent, ToolContext, extract_precompact, truncate_str
from chatmate.config import AgentConfig
from chatmate.errors import AgentError, ProviderError, ToolError
from chatmate.llm import StreamedToolCall, StreamResult
from chatmate.store import MemoryStore


class FakeLlm:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.model = "test-model"
        self.temperature = 0.5
        self.max_tokens = 100

    async def stream_chat(self, request, on_delta=None):
        self.requests.append(copy.deepcopy(request))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if on_delta is not None and response.text:
            await on_delta(response.text)
        return response


class FakeBot:
    def __init__(self):
        self.calls = []

    async def edit_forum_topic(self, **kwargs):
        self.calls.append(kwargs)


def make_config(iterations=3, history=20):
    return AgentConfig(max_tool_iterations=iterations, max_history_messages=history,
                       prompt_files=[], timezone="UTC")


def tool_result(name="lookup", call_id="call_1", arguments='{"q": 1}'):
    return StreamResult(text="", tool_calls=[StreamedToolCall(call_id, name, arguments)])


# --- pure helpers -----------------------------------------------------------

def test_extract_precompact_joins_sections():
    identity = (
        "intro\n<!-- precompact -->\nrule one\n<!-- /precompact -->\n"
        "middle\n  <!-- precompact -->  \nrule two\n<!-- /precompact -->\nend"
    )
    assert extract_precompact(identity) == "rule one\n\nrule two"


def test_extract_precompact_ignores_empty_and_unclosed():
    identity = "<!-- precompact -->\n   \n<!-- /precompact -->\n<!-- precompact -->\nlost"
    assert extract_precompact(identity) == ""


def test_extract_precompact_without_markers():
    assert extract_precompact("just an identity\nwith lines") == ""


def test_truncate_str_short_untouched():
    assert truncate_str("hello", 10) == "hello"


def test_truncate_str_ascii():
    assert truncate_str("hello", 3) == "hel"


def test_truncate_str_respects_char_boundary():
    result = truncate_str("привет", 3)
    assert result == "п"
    assert len(result.encode("utf-8")) <= 3


# --- system prompt ----------------------------------------------------------

@pytest.mark.asyncio
async def test_build_system_prompt_groups_memories(tmp_path):
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await store.store_memory("name", "Alice", "core")
        await store.store_memory("drink", "tea", "preference")
        await store.store_memory("city", "Paris", "core")
        agent = Agent(FakeLlm([]), store, "You are helpful.", make_config())
        prompt = await agent.build_system_prompt()

    assert prompt.startswith("You are helpful.\n\n## What you know about the user\n\n")
    assert "core:\n  city — Paris\n  name — Alice\n" in prompt
    assert "preference:\n  drink — tea\n" in prompt
    assert prompt.index("core:") < prompt.index("preference:")
    assert re.search(r"\n\nCurrent time: \w+day, \d{4}-\d{2}-\d{2} \d{2}:\d{2} UTC\n$", prompt)


@pytest.mark.asyncio
async def test_build_system_prompt_without_memories(tmp_path):
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(FakeLlm([]), store, "identity", make_config())
        prompt = await agent.build_system_prompt()
    assert "What you know about the user" not in prompt
    assert prompt.startswith("identity\n\nCurrent time: ")


# --- message processing -----------------------------------------------------

@pytest.mark.asyncio
async def test_process_message_plain_reply(tmp_path):
    deltas = []

    async def on_delta(text):
        deltas.append(text)

    llm = FakeLlm([StreamResult(text="Hi there")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(llm, store, "identity", make_config())
        reply = await agent.process_message(1, None, "alice", "Hello", [], on_delta)
        history = await store.load_history(1, None, 10)

    assert reply == "Hi there"
    assert deltas == ["Hi there"]
    assert [(m.role, m.content) for m in history] == [("user", "Hello"), ("assistant", "Hi there")]
    request = llm.requests[0]
    assert "tools" not in request
    assert request["model"] == "test-model"
    assert request["stream_options"] == {"include_usage": True}
    assert request["messages"][-1] == {"role": "user", "content": "Hello"}


@pytest.mark.asyncio
async def test_process_message_adds_thread_to_prompt(tmp_path):
    llm = FakeLlm([StreamResult(text="ok")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(llm, store, "identity", make_config())
        await agent.process_message(1, 7, "alice", "Hello")
    system = llm.requests[0]["messages"][0]
    assert system["role"] == "system"
    assert system["content"].endswith("Thread: #7\n")


@pytest.mark.asyncio
async def test_process_message_runs_tools(tmp_path):
    seen = []

    async def execute_tool(name, arguments, ctx):
        seen.append((name, json.loads(arguments), ctx.chat_id, ctx.thread_id))
        assert isinstance(ctx, ToolContext)
        return "42"

    specs = [{"type": "function", "function": {"name": "lookup", "parameters": {}}}]
    llm = FakeLlm([tool_result(), StreamResult(text="The answer is 42")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(llm, store, "identity", make_config(), specs, execute_tool)
        reply = await agent.process_message(5, 3, "alice", "question")

    assert reply == "The answer is 42"
    assert seen == [("lookup", {"q": 1}, 5, 3)]
    assert llm.requests[0]["tools"] == specs
    second = llm.requests[1]["messages"]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["content"] is None
    assert second[-2]["tool_calls"][0]["function"] == {"name": "lookup", "arguments": '{"q": 1}'}
    assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "42"}


@pytest.mark.asyncio
async def test_process_message_tool_failure_becomes_error_text(tmp_path):
    async def execute_tool(name, arguments, ctx):
        raise ToolError(name, "boom")

    llm = FakeLlm([tool_result(), StreamResult(text="sorry")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(llm, store, "identity", make_config(), [], execute_tool)
        reply = await agent.process_message(1, None, "alice", "q")

    assert reply == "sorry"
    tool_msg = llm.requests[1]["messages"][-1]
    assert tool_msg["content"] == f"Error: {ToolError('lookup', 'boom')}"


@pytest.mark.asyncio
async def test_process_message_exceeds_iterations(tmp_path):
    async def execute_tool(name, arguments, ctx):
        return "again"

    llm = FakeLlm([tool_result(), tool_result()])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(llm, store, "identity", make_config(iterations=2), [], execute_tool)
        with pytest.raises(AgentError, match=r"Exceeded max tool iterations \(2\)"):
            await agent.process_message(1, None, "alice", "q")
    assert len(llm.requests) == 2


# --- history compression ----------------------------------------------------

async def _fill(store, count, thread_id=None):
    for n in range(count):
        role = "user" if n % 2 == 0 else "assistant"
        await store.save_message(1, thread_id, role, f"message {n}")


@pytest.mark.asyncio
async def test_compress_history_replaces_old_messages(tmp_path):
    identity = "id\n<!-- precompact -->\nNever lie\n<!-- /precompact -->\n"
    llm = FakeLlm([StreamResult(text="short summary")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await _fill(store, 6)
        agent = Agent(llm, store, identity, make_config(history=4))
        await agent.maybe_compress_history(1, None)
        history = await store.load_history(1, None, 20)

    assert len(history) == 3
    assert history[0].role == "system"
    assert history[0].content == "short summary\n\n---\n[Critical rules — always follow]\nNever lie"
    assert [m.content for m in history[1:]] == ["message 4", "message 5"]
    prompt = llm.requests[0]["messages"][0]["content"]
    assert "User: message 0\n\nAssistant: message 1\n\n" in prompt
    assert "message 4" not in prompt
    assert llm.requests[0]["max_tokens"] == 500


@pytest.mark.asyncio
async def test_compress_history_below_threshold_does_nothing(tmp_path):
    llm = FakeLlm([])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await _fill(store, 4)
        agent = Agent(llm, store, "id", make_config(history=4))
        await agent.maybe_compress_history(1, None)
        history = await store.load_history(1, None, 20)
    assert llm.requests == []
    assert len(history) == 4


@pytest.mark.asyncio
async def test_compress_history_swallows_llm_failure(tmp_path):
    llm = FakeLlm([ProviderError("down")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await _fill(store, 6)
        agent = Agent(llm, store, "id", make_config(history=4))
        await agent.maybe_compress_history(1, None)
        history = await store.load_history(1, None, 20)
    assert [m.content for m in history] == [f"message {n}" for n in range(6)]


# --- memory extraction ------------------------------------------------------

@pytest.mark.asyncio
async def test_extract_memories_applies_actions(tmp_path):
    actions = [
        {"action": "store", "key": "name", "content": "Bob"},
        {"action": "store", "key": "pet", "content": "cat", "category": "preference"},
        {"action": "store", "key": "", "content": "ignored"},
        {"action": "delete", "key": "old"},
    ]
    llm = FakeLlm([StreamResult(text="```json\n" + json.dumps(actions) + "\n```")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await store.store_memory("old", "stale", "core")
        agent = Agent(llm, store, "id", make_config())
        await agent.extract_memories("I am Bob and I have a cat", "Nice!")
        memories = await store.load_all_memories()

    assert [(m.key, m.content, m.category) for m in memories] == [
        ("name", "Bob", "core"),
        ("pet", "cat", "preference"),
    ]
    prompt = llm.requests[0]["messages"][0]["content"]
    assert "- old (core): stale" in prompt
    assert "User: I am Bob and I have a cat\nAssistant: Nice!" in prompt


@pytest.mark.asyncio
async def test_extract_memories_ignores_invalid_json(tmp_path):
    llm = FakeLlm([StreamResult(text="not json at all")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await store.store_memory("keep", "me", "core")
        agent = Agent(llm, store, "id", make_config())
        await agent.extract_memories("hi", "hello")
        memories = await store.load_all_memories()
    assert [(m.key, m.content) for m in memories] == [("keep", "me")]
    assert "No existing memories." not in llm.requests[0]["messages"][0]["content"]


# --- topic naming -----------------------------------------------------------

@pytest.mark.asyncio
async def test_name_topic_sets_name_and_icon(tmp_path):
    bot = FakeBot()
    llm = FakeLlm([StreamResult(text=' "🛒 Shopping list" ')])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await _fill(store, 2, thread_id=9)
        agent = Agent(llm, store, "id", make_config())
        await agent.maybe_name_topic(1, 9, "buy milk", "added", bot)

    assert bot.calls == [
        {"chat_id": 1, "message_thread_id": 9, "name": "🛒 Shopping list"},
        {"chat_id": 1, "message_thread_id": 9, "icon_custom_emoji_id": "🛒"},
    ]
    assert llm.requests[0]["max_tokens"] == 50


@pytest.mark.asyncio
async def test_name_topic_ascii_name_has_no_icon(tmp_path):
    bot = FakeBot()
    llm = FakeLlm([StreamResult(text="Groceries")])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(llm, store, "id", make_config())
        await agent.maybe_name_topic(1, 9, "buy milk", "added", bot)
    assert bot.calls == [{"chat_id": 1, "message_thread_id": 9, "name": "Groceries"}]


@pytest.mark.asyncio
async def test_name_topic_skipped_outside_thread_or_later(tmp_path):
    bot = FakeBot()
    llm = FakeLlm([])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        await _fill(store, 3, thread_id=9)
        agent = Agent(llm, store, "id", make_config())
        await agent.maybe_name_topic(1, None, "a", "b", bot)
        await agent.maybe_name_topic(1, 9, "a", "b", bot)
    assert bot.calls == []
    assert llm.requests == []


@pytest.mark.asyncio
async def test_name_topic_rejects_overlong_name(tmp_path):
    bot = FakeBot()
    llm = FakeLlm([StreamResult(text="x" * 129)])
    async with await MemoryStore.open(tmp_path / "db.sqlite") as store:
        agent = Agent(llm, store, "id", make_config())
        await agent.maybe_name_topic(1, 9, "a", "b", bot)
    assert bot.calls == []