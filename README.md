# chatmate

chatmate is an asynchronous library for building a personal Telegram assistant.
It talks to any OpenAI-compatible chat completion API (OpenRouter by default),
streams replies into the chat as message drafts while they are being written,
and keeps a long-term memory of facts about the user in SQLite with full-text
and embedding-based search.

## Modules

- `chatmate.config` – `Config` and its sections (`AgentConfig`, `LlmConfig`,
  `SttConfig`, `TelegramConfig`, `MemoryConfig`, `SchedulerConfig`,
  `EmbeddingsConfig`).
- `chatmate.agent` – `Agent`, `ToolContext`, `extract_precompact`, `truncate_str`.
- `chatmate.llm` – `LlmClient` (streaming chat completions), `StreamResult`,
  `StreamedToolCall`, `build_messages`.
- `chatmate.store` – `MemoryStore`, `CoreMemory`, `ChatMessage`,
  `embedding_to_blob`, `blob_to_embedding`.
- `chatmate.embeddings` – `EmbeddingClient`, `cosine_similarity`.
- `chatmate.stt` – `SttClient` for Whisper-compatible transcription.
- `chatmate.telegram` – `TelegramApi`, `TelegramBot`, `InlineButton`,
  `extract_buttons`.
- `chatmate.format` – `md_to_telegram_html`, `escape_html`.
- `chatmate.errors` – the exception hierarchy.

## Features

- `Agent.process_message` streams the reply and runs tool calls in a loop, up to
  `max_tool_iterations` rounds; beyond that it raises `AgentError`.
- History is kept per chat and per forum topic. When it grows past
  `max_history_messages`, the older part is summarised by the model and the
  recent half is kept. Sections of the identity prompt between
  `<!-- precompact -->` and `<!-- /precompact -->` lines are appended to every
  summary.
- After each message exchange `TelegramBot` asks the agent to extract durable
  facts about the user (`Agent.extract_memories`) and to name a new forum topic
  (`Agent.maybe_name_topic`).
- Voice messages are transcribed with `SttClient`; photos are passed to the
  model as base64 `data:` image URLs; a photo without text is sent with a
  request to describe it.
- Inline keyboards: a reply may contain a ` ```buttons ` block holding JSON rows
  of `{"label": ..., "data": ...}` or `{"label": ..., "url": ...}` (a flat list
  becomes one row). `extract_buttons` removes the block from the text; callback
  data is cut to 64 bytes. Pressing a button sends its data to the agent as a
  user message.
- Only users listed in `allowed_users` (or everyone, with `"*"`) are answered.

## Configuration

`Config.load(path="config", environ=None)` reads a TOML file (the path as given,
or the same path with `.toml` appended), overlays environment variables named
`AGENT__SECTION__KEY` (case-insensitive), replaces `telegram.allowed_users` with
the comma-separated `TELEGRAM_ALLOWED_USERS` when it is set, and validates. A
minimal file:

```toml
[agent]
max_tool_iterations = 10
max_history_messages = 40
prompt_files = ["identity.md"]
timezone = "Europe/Moscow"

[llm]
model = "openai/gpt-4o-mini"
temperature = 0.7
max_tokens = 4096

[telegram]
allowed_users = ["alice"]
stream_throttle_ms = 300

[memory]
db_path = "data/memory.db"
```

`[stt]`, `[embeddings]` and `[scheduler]` are optional and have defaults.
`Config.validate` raises `ConfigError` for an unknown timezone, a missing prompt
file, zero limits, an empty model or API base, or an empty list of allowed
users. `Config.from_dict` builds a configuration from plain mappings.

## Usage

```python
import asyncio
import os
from pathlib import Path

from chatmate.agent import Agent
from chatmate.config import Config
from chatmate.llm import LlmClient
from chatmate.store import MemoryStore
from chatmate.stt import SttClient
from chatmate.telegram import TelegramApi, TelegramBot


async def run() -> None:
    config = Config.load("config.toml", os.environ)
    identity = "\n\n".join(Path(p).read_text() for p in config.agent.prompt_files)

    memory = await MemoryStore.open(config.memory.db_path)
    llm = LlmClient(
        api_key="placeholder",
        api_base=config.llm.api_base,
        model=config.llm.model,
        temperature=config.llm.temperature,
        max_tokens=config.llm.max_tokens,
    )
    agent = Agent(llm, memory, identity, config.agent)
    stt = SttClient(api_key="placeholder", api_base=config.stt.api_base, model=config.stt.model)

    api = TelegramApi("token")
    bot = TelegramBot(api, config.telegram, agent, stt)

    shutdown = asyncio.Event()
    try:
        await bot.run(shutdown)
    finally:
        await memory.close()


asyncio.run(run())
```

### Tools

`Agent` accepts `tool_specs` (OpenAI-style function definitions sent with each
request) and `execute_tool`, an async callable taking the tool name, its JSON
argument string and a `ToolContext`. Its result (or the result's `output`
attribute) is sent back to the model. Errors are sent back as `Error: ...`.

### Memory store

```python
store = await MemoryStore.open("memory.db")
await store.store_memory("name", "Alice", "core")
await store.search_memories("Alice", 5)
await store.save_message(42, None, "user", "hello")
history = await store.load_history(42, None, 20)
await store.save_embedding("name", [0.1, 0.2, 0.3])
await store.search_by_embedding([0.1, 0.2, 0.3], 5)
```

`MemoryStore` is also an async context manager that closes the connection.

### Formatting

```python
from chatmate.format import md_to_telegram_html

md_to_telegram_html("**bold** and `code`")
# '<b>bold</b> and <code>code</code>'
```

## What the package does not do

- It has no command-line program; the application is assembled in your own
  code as shown above, including reading API keys.
- It ships no tools: without an `execute_tool` callable every tool call the
  model makes is answered with an error.
- `SchedulerConfig` is read and validated, but there is no scheduler.
- `EmbeddingsConfig` is only configuration: embeddings are computed and stored
  only when your code calls `EmbeddingClient.embed` and
  `MemoryStore.save_embedding`.
- `TelegramBot` sends replies with HTML parse mode as the model wrote them; it
  does not run them through `md_to_telegram_html`.

## Errors

All failures raised by the package derive from `AgentError`:
`ProviderError`, `ToolError`, `TelegramError`, `ConfigError` and `DatabaseError`.