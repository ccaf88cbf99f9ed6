"""The conversational agent: prompt assembly, tool loop, history compression."""

import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import groupby
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import AgentConfig
from .embeddings import EmbeddingClient
from .errors import AgentError, ToolError
from .llm import DeltaCallback, LlmClient, StreamResult, build_messages
from .store import MemoryStore

logger = logging.getLogger(__name__)

PRECOMPACT_OPEN = "<!-- precompact -->"
PRECOMPACT_CLOSE = "<!-- /precompact -->"
CRITICAL_RULES_HEADER = "[Critical rules — always follow]"
MAX_TOPIC_NAME_BYTES = 128


@dataclass
class ToolContext:
    """What a tool may use while it runs."""

    store: MemoryStore
    bot: Any
    chat_id: int
    thread_id: int | None
    llm: LlmClient
    embeddings: EmbeddingClient | None = None


ToolExecutor = Callable[[str, str, ToolContext], Awaitable[Any]]


def extract_precompact(identity: str) -> str:
    """Return the sections between precompact markers, joined by blank lines."""
    sections: list[str] = []
    current: list[str] = []
    in_section = False

    for line in _lines(identity):
        marker = line.strip()
        if marker == PRECOMPACT_OPEN:
            in_section = True
            current = []
            continue
        if marker == PRECOMPACT_CLOSE:
            body = "".join(current).strip()
            if in_section and body:
                sections.append(body)
            in_section = False
            current = []
            continue
        if in_section:
            current.append(line + "\n")

    return "\n\n".join(sections)


def truncate_str(s: str, max_bytes: int) -> str:
    """Cut `s` to at most `max_bytes` UTF-8 bytes without splitting a character."""
    encoded = s.encode("utf-8")
    if len(encoded) <= max_bytes:
        return s
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def _lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _strip_json_fence(text: str) -> str:
    text = text.strip()
    while text.startswith("```json"):
        text = text[len("```json"):]
    while text.endswith("```"):
        text = text[:-len("```")]
    return text.strip()


def _user_request(model: str, prompt: str, temperature: float, max_tokens: int) -> dict[str, Any]:
    return {
        "model": model,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": prompt}],
    }


class Agent:
    """Answers chat messages with an LLM, calling tools and managing memory."""

    def __init__(self, llm: LlmClient, memory: MemoryStore, identity: str,
                 config: AgentConfig, tool_specs: Sequence[dict[str, Any]] = (),
                 execute_tool: ToolExecutor | None = None,
                 embeddings: EmbeddingClient | None = None) -> None:
        self.llm = llm
        self.memory = memory
        self.identity = identity
        self.precompact = extract_precompact(identity)
        self.config = config
        self.tool_specs = list(tool_specs)
        self._execute_tool = execute_tool
        self.embeddings = embeddings

    async def build_system_prompt(self) -> str:
        """Identity, known facts grouped by category, and the local time."""
        memories = await self.memory.load_all_memories()
        parts = [self.identity]

        if memories:
            parts.append("\n\n## What you know about the user\n\n")
            ordered = sorted(memories, key=lambda m: m.category)
            for category, group in groupby(ordered, key=lambda m: m.category):
                parts.append(f"{category}:\n")
                parts.extend(f"  {m.key} — {m.content}\n" for m in group)

        try:
            tz = ZoneInfo(self.config.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            tz = ZoneInfo("UTC")
        local = datetime.now(timezone.utc).astimezone(tz)
        parts.append(f"\n\nCurrent time: {local.strftime('%A, %Y-%m-%d %H:%M %Z')}\n")
        return "".join(parts)

    async def process_message(self, chat_id: int, thread_id: int | None, username: str,
                              user_message: str, image_urls: Sequence[str] = (),
                              on_delta: DeltaCallback | None = None,
                              bot: Any = None) -> str:
        """Answer a user message, running tool calls until the model replies with text."""
        system_prompt = await self.build_system_prompt()
        if thread_id is not None:
            system_prompt += f"Thread: #{thread_id}\n"

        try:
            await self.maybe_compress_history(chat_id, thread_id)
        except Exception as exc:  # compression is best-effort
            logger.warning("history compression error: %s", exc)

        history = await self.memory.load_history(
            chat_id, thread_id, self.config.max_history_messages
        )
        await self.memory.save_message(chat_id, thread_id, "user", user_message)

        messages = build_messages(system_prompt, history, user_message, image_urls)
        logger.info("message from %s in %s:%s: %s", username, chat_id,
                    thread_id or 0, truncate_str(user_message, 500))

        for iteration in range(self.config.max_tool_iterations):
            request: dict[str, Any] = {
                "model": self.llm.model,
                "temperature": self.llm.temperature,
                "max_tokens": self.llm.max_tokens,
                "messages": list(messages),
                "stream_options": {"include_usage": True},
            }
            if self.tool_specs:
                request["tools"] = list(self.tool_specs)

            result: StreamResult = await self.llm.stream_chat(request, on_delta)
            if result.prompt_tokens is not None and result.completion_tokens is not None:
                total = result.total_tokens
                if total is None:
                    total = result.prompt_tokens + result.completion_tokens
                logger.debug("usage: input=%d output=%d total=%d",
                             result.prompt_tokens, result.completion_tokens, total)

            if not result.tool_calls:
                await self.memory.save_message(chat_id, thread_id, "assistant", result.text)
                logger.info("done: chat=%s iterations=%d len=%d",
                            chat_id, iteration + 1, len(result.text))
                return result.text

            logger.info("tool calls (iteration %d): %s",
                        iteration, [call.name for call in result.tool_calls])

            messages.append({
                "role": "assistant",
                "content": result.text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in result.tool_calls
                ],
            })

            ctx = ToolContext(
                store=self.memory,
                bot=bot,
                chat_id=chat_id,
                thread_id=thread_id,
                llm=self.llm,
                embeddings=self.embeddings,
            )
            for call in result.tool_calls:
                try:
                    output = await self._run_tool(call.name, call.arguments, ctx)
                except Exception as exc:
                    logger.warning("tool %s failed: %s", call.name, exc)
                    output = f"Error: {exc}"
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": output,
                })

        raise AgentError(
            f"Exceeded max tool iterations ({self.config.max_tool_iterations})"
        )

    async def _run_tool(self, name: str, arguments: str, ctx: ToolContext) -> str:
        if self._execute_tool is None:
            raise ToolError(name, "unknown tool")
        outcome = await self._execute_tool(name, arguments, ctx)
        output = getattr(outcome, "output", outcome)
        return output if isinstance(output, str) else str(output)

    async def maybe_compress_history(self, chat_id: int, thread_id: int | None) -> None:
        """Summarise the older part of a long history, keeping the recent half."""
        threshold = self.config.max_history_messages
        keep = threshold // 2

        everything = await self.memory.load_history(chat_id, thread_id, threshold + 10)
        if len(everything) <= threshold:
            return

        to_compress = everything[:len(everything) - keep]
        role_names = {"system": "Previous summary", "user": "User", "assistant": "Assistant"}
        conversation = "".join(
            f"{role_names.get(msg.role, msg.role)}: {msg.content}\n\n" for msg in to_compress
        )
        prompt = (
            "Summarize this conversation concisely, preserving all important context, "
            "decisions, and facts. Write in the same language as the conversation.\n\n"
            f"{conversation}\n\n"
            "Reply with ONLY the summary, no preamble."
        )

        try:
            result = await self.llm.stream_chat(
                _user_request(self.llm.model, prompt, 0.3, 500), None
            )
        except Exception as exc:
            logger.warning("history compression failed: %s", exc)
            return

        summary = result.text
        if not summary:
            return
        if self.precompact:
            summary = f"{summary}\n\n---\n{CRITICAL_RULES_HEADER}\n{self.precompact}"

        await self.memory.compress_messages(chat_id, thread_id, len(to_compress), summary)
        logger.info("history compressed: chat=%s compressed=%d summary_len=%d",
                    chat_id, len(to_compress), len(summary))

    async def extract_memories(self, user_message: str, assistant_response: str) -> None:
        """Ask the model which long-term facts to store or delete, and apply them."""
        try:
            memories = await self.memory.load_all_memories()
        except Exception:
            return

        if memories:
            existing = "\n".join(f"- {m.key} ({m.category}): {m.content}" for m in memories)
        else:
            existing = "No existing memories."

        prompt = (
            "Analyze this conversation exchange and extract important facts about the user "
            "that should be remembered.\n\n"
            f"Existing memories:\n{existing}\n\n"
            f"User: {truncate_str(user_message, 500)}\n"
            f"Assistant: {truncate_str(assistant_response, 500)}\n\n"
            "Return a JSON array of actions. Each action is one of:\n"
            '- {"action": "store", "key": "...", "content": "...", '
            '"category": "core|preference|decision"}\n'
            '- {"action": "delete", "key": "..."}\n\n'
            "Rules:\n"
            "- Only extract genuinely important, long-term facts "
            "(name, preferences, habits, decisions)\n"
            "- Do NOT store transient info (current question, temporary context)\n"
            "- Update existing memories if new info refines them\n"
            "- Delete memories that are contradicted by new info\n"
            "- Return [] if nothing worth remembering\n"
            "- Reply with ONLY the JSON array, nothing else"
        )

        try:
            result = await self.llm.stream_chat(
                _user_request(self.llm.model, prompt, 0.3, 500), None
            )
        except Exception as exc:
            logger.debug("memory extraction failed: %s", exc)
            return

        try:
            actions = json.loads(_strip_json_fence(result.text))
        except json.JSONDecodeError:
            return
        if not isinstance(actions, list):
            return

        for action in actions:
            if not isinstance(action, dict):
                continue
            kind = action.get("action")
            key = action.get("key")
            key = key if isinstance(key, str) else ""
            if kind == "store":
                content = action.get("content")
                content = content if isinstance(content, str) else ""
                category = action.get("category")
                category = category if isinstance(category, str) else "core"
                if key and content:
                    try:
                        await self.memory.store_memory(key, content, category)
                    except Exception as exc:
                        logger.debug("auto-store of %s failed: %s", key, exc)
                    else:
                        logger.info("memory auto-extracted: %s", key)
            elif kind == "delete" and key:
                try:
                    await self.memory.forget_memory(key)
                except Exception:
                    pass
                logger.info("memory auto-deleted: %s", key)

    async def maybe_name_topic(self, chat_id: int, thread_id: int | None,
                               user_message: str, assistant_response: str,
                               bot: Any) -> None:
        """Give a forum topic a short emoji title after its first exchange."""
        if thread_id is None:
            return

        try:
            history_count = len(await self.memory.load_history(chat_id, thread_id, 5))
        except Exception:
            history_count = 0
        if history_count > 2:
            return

        prompt = (
            "Generate a very short forum topic name (max 4 words) with one fitting emoji "
            "at the start, based on this conversation.\n"
            f"User: {truncate_str(user_message, 200)}\n"
            f"Assistant: {truncate_str(assistant_response, 200)}\n\n"
            "Reply with ONLY the topic name, nothing else. "
            'Example: "🛒 Список покупок" or "🦀 Rust async вопрос"'
        )

        try:
            result = await self.llm.stream_chat(
                _user_request(self.llm.model, prompt, 0.7, 50), None
            )
        except Exception as exc:
            logger.debug("topic naming failed: %s", exc)
            return

        topic_name = result.text.strip().strip('"')
        if not topic_name or len(topic_name.encode("utf-8")) > MAX_TOPIC_NAME_BYTES:
            return

        first = topic_name[0]
        icon = None if first.isascii() else first

        try:
            await bot.edit_forum_topic(chat_id=chat_id, message_thread_id=thread_id,
                                       name=topic_name)
            logger.info("topic %s:%s named %s", chat_id, thread_id, topic_name)
        except Exception as exc:
            logger.debug("topic rename failed: %s", exc)

        if icon is not None:
            try:
                await bot.edit_forum_topic(chat_id=chat_id, message_thread_id=thread_id,
                                           icon_custom_emoji_id=icon)
            except Exception:
                pass