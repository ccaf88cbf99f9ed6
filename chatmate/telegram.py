"""Telegram front end: long polling, streamed drafts, inline buttons, voice and photos."""

import asyncio
import base64
import contextlib
import json
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from .agent import Agent, truncate_str
from .config import TelegramConfig
from .errors import ConfigError, TelegramError
from .stt import SttClient

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
BUTTONS_MARKER = "```buttons"
FENCE = "```"
MAX_CALLBACK_DATA_BYTES = 64
MIN_DRAFT_LEN = 5
POLL_TIMEOUT_SECS = 30
POLL_ERROR_DELAY_SECS = 5
ALLOWED_UPDATES = ("message", "callback_query")

ERROR_REPLY = "Произошла ошибка."
VOICE_ERROR_REPLY = "Не удалось распознать голосовое."
DESCRIBE_IMAGE_PROMPT = "Что на этом изображении?"

ButtonRows = list[list["InlineButton"]]


@dataclass(frozen=True)
class InlineButton:
    """An inline keyboard button opening a URL or sending callback data."""

    text: str
    url: str | None = None
    callback_data: str | None = None

    def to_dict(self) -> dict[str, str]:
        button = {"text": self.text}
        if self.url is not None:
            button["url"] = self.url
        if self.callback_data is not None:
            button["callback_data"] = self.callback_data
        return button


def extract_buttons(text: str) -> tuple[str, ButtonRows | None]:
    """Split a ```buttons JSON block off the reply.

    Returns the text without the block and the button rows, or the original
    text and None when there is no usable block.
    """
    start = text.find(BUTTONS_MARKER)
    if start < 0:
        return text, None
    json_start = start + len(BUTTONS_MARKER)
    end = text.find(FENCE, json_start)
    if end < 0:
        return text, None

    json_str = text[json_start:end].strip()
    clean = (text[:start].rstrip() + text[end + len(FENCE):].lstrip()).strip()

    try:
        parsed = json.loads(json_str)
    except json.JSONDecodeError:
        return text, None
    if not isinstance(parsed, list):
        return text, None
    if not all(isinstance(row, list) for row in parsed):
        parsed = [parsed]

    rows = [buttons for buttons in (_parse_row(row) for row in parsed) if buttons]
    return clean, (rows or None)


def _parse_row(row: list[Any]) -> list[InlineButton]:
    buttons = []
    for spec in row:
        if not isinstance(spec, dict) or not isinstance(spec.get("label"), str):
            continue
        label = spec["label"]
        url = spec.get("url")
        if isinstance(url, str):
            buttons.append(InlineButton(text=label, url=url))
            continue
        data = spec.get("data")
        data = data if isinstance(data, str) else label
        buttons.append(InlineButton(text=label,
                                    callback_data=truncate_str(data, MAX_CALLBACK_DATA_BYTES)))
    return buttons


def _strip_buttons_block(text: str) -> str:
    position = text.find(BUTTONS_MARKER)
    return text if position < 0 else text[:position].rstrip()


class TelegramApi:
    """Minimal asynchronous Telegram Bot API client."""

    def __init__(self, token: str, client: httpx.AsyncClient | None = None) -> None:
        self.token = token
        self._client = client

    async def _request(self, method: str, url: str, timeout: float, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, timeout=timeout, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.request(method, url, timeout=timeout, **kwargs)
        except httpx.HTTPError as exc:
            raise TelegramError(str(exc)) from exc

    async def _call(self, method: str, payload: dict[str, Any], timeout: float = 30.0) -> Any:
        url = f"{API_BASE}/bot{self.token}/{method}"
        response = await self._request("POST", url, timeout, json=payload)
        try:
            data = response.json()
        except ValueError as exc:
            raise TelegramError(f"{method}: HTTP {response.status_code}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TelegramError(description or f"{method}: HTTP {response.status_code}")
        return data.get("result")

    async def get_updates(self, offset: int | None = None,
                          timeout: int = POLL_TIMEOUT_SECS) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": list(ALLOWED_UPDATES)}
        if offset is not None:
            payload["offset"] = offset
        return list(await self._call("getUpdates", payload, timeout=timeout + 10) or [])

    async def send_message(self, chat_id: int, text: str, thread_id: int | None = None,
                           buttons: Sequence[Sequence[InlineButton]] | None = None) -> Any:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        if thread_id is not None:
            payload["message_thread_id"] = thread_id
        if buttons:
            payload["reply_markup"] = {
                "inline_keyboard": [[button.to_dict() for button in row] for row in buttons]
            }
        return await self._call("sendMessage", payload)

    async def send_message_draft(self, chat_id: int, text: str, draft_id: int,
                                 thread_id: int | None = None) -> Any:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text, "draft_id": draft_id}
        if thread_id is not None:
            payload["message_thread_id"] = thread_id
        return await self._call("sendMessageDraft", payload)

    async def send_chat_action(self, chat_id: int, action: str = "typing",
                               thread_id: int | None = None) -> Any:
        payload: dict[str, Any] = {"chat_id": chat_id, "action": action}
        if thread_id is not None:
            payload["message_thread_id"] = thread_id
        return await self._call("sendChatAction", payload)

    async def answer_callback_query(self, callback_query_id: str) -> Any:
        return await self._call("answerCallbackQuery", {"callback_query_id": callback_query_id})

    async def get_file_path(self, file_id: str) -> str:
        result = await self._call("getFile", {"file_id": file_id})
        file_path = result.get("file_path") if isinstance(result, dict) else None
        if not file_path:
            raise TelegramError("no file_path in response")
        return file_path

    async def download_file(self, file_path: str) -> bytes:
        url = f"{API_BASE}/file/bot{self.token}/{file_path}"
        response = await self._request("GET", url, 60.0)
        if not response.is_success:
            raise TelegramError(f"file download failed: HTTP {response.status_code}")
        return response.content

    async def edit_forum_topic(self, chat_id: int, message_thread_id: int,
                               name: str | None = None,
                               icon_custom_emoji_id: str | None = None) -> Any:
        payload: dict[str, Any] = {"chat_id": chat_id, "message_thread_id": message_thread_id}
        if name is not None:
            payload["name"] = name
        if icon_custom_emoji_id is not None:
            payload["icon_custom_emoji_id"] = icon_custom_emoji_id
        return await self._call("editForumTopic", payload)


async def _drain(queue: "asyncio.Queue[str | None]") -> AsyncIterator[str]:
    while (delta := await queue.get()) is not None:
        yield delta


class TelegramBot:
    """Polls Telegram and routes authorised messages and button clicks to the agent."""

    def __init__(self, api: TelegramApi, config: TelegramConfig, agent: Agent,
                 stt: SttClient | None = None) -> None:
        self.api = api
        self.agent = agent
        self.stt = stt
        self.allowed_users = set(config.allowed_users)
        self.stream_throttle = config.stream_throttle_ms / 1000
        self._tasks: set[asyncio.Task] = set()

    def _is_allowed(self, username: str) -> bool:
        return "*" in self.allowed_users or username in self.allowed_users

    async def run(self, shutdown: asyncio.Event | None = None) -> None:
        """Poll for updates until `shutdown` is set, handling each in its own task."""
        shutdown = shutdown or asyncio.Event()
        offset: int | None = None
        logger.info("telegram bot started polling; allowed users: %s", sorted(self.allowed_users))

        while not shutdown.is_set():
            poll = asyncio.create_task(self.api.get_updates(offset, POLL_TIMEOUT_SECS))
            stop = asyncio.create_task(shutdown.wait())
            await asyncio.wait({poll, stop}, return_when=asyncio.FIRST_COMPLETED)
            if shutdown.is_set():
                poll.cancel()
                with contextlib.suppress(BaseException):
                    await poll
                logger.info("telegram: shutdown received")
                break
            stop.cancel()

            try:
                updates = poll.result()
            except Exception as exc:
                logger.error("polling error: %s", exc)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(shutdown.wait(), POLL_ERROR_DELAY_SECS)
                continue

            for update in updates:
                next_offset = int(update["update_id"]) + 1
                offset = next_offset if offset is None else max(offset, next_offset)
                task = asyncio.create_task(self.handle_update(update))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Handle one update: a button click or an incoming message."""
        callback = update.get("callback_query")
        if callback is not None:
            await self.handle_callback(callback)
            return

        message = update.get("message")
        if message is None:
            return

        chat_id = message["chat"]["id"]
        thread_id = message.get("message_thread_id")
        username = (message.get("from") or {}).get("username") or ""
        if not self._is_allowed(username):
            logger.warning("unauthorized: %s in chat %s", username, chat_id)
            return

        image_urls: list[str] = []
        photos = message.get("photo")
        if photos:
            try:
                encoded = await self.download_file_as_base64(photos[-1]["file_id"])
            except Exception as exc:
                logger.error("photo download failed in chat %s: %s", chat_id, exc)
            else:
                image_urls.append(f"data:image/jpeg;base64,{encoded}")
                logger.info("photo received in chat %s", chat_id)

        if message.get("text") is not None:
            text = message["text"]
            if not text and not image_urls:
                return
        elif message.get("caption") is not None:
            text = message["caption"]
        elif message.get("voice") is not None:
            try:
                text = await self.transcribe_voice(message["voice"]["file_id"])
            except Exception as exc:
                logger.error("voice transcription failed in chat %s: %s", chat_id, exc)
                await self.send_final(chat_id, thread_id, VOICE_ERROR_REPLY)
                return
            logger.info("voice transcribed in chat %s (%d chars)", chat_id, len(text))
        elif image_urls:
            text = DESCRIBE_IMAGE_PROMPT
        else:
            return

        logger.info("message from %s in chat %s (%d chars)", username, chat_id, len(text))
        with contextlib.suppress(Exception):
            await self.api.send_chat_action(chat_id, "typing", thread_id)

        reply = await self._converse(chat_id, thread_id, username, text, image_urls)
        if reply is not None:
            await self.agent.maybe_name_topic(chat_id, thread_id, text, reply, self.api)
            await self.agent.extract_memories(text, reply)

    async def handle_callback(self, callback: dict[str, Any]) -> None:
        """Treat an inline button's callback data as a user message."""
        with contextlib.suppress(Exception):
            await self.api.answer_callback_query(callback["id"])

        data = callback.get("data")
        if not data:
            return
        message = callback.get("message")
        if message is None:
            return

        chat_id = message["chat"]["id"]
        thread_id = message.get("message_thread_id")
        username = (callback.get("from") or {}).get("username") or ""
        if not self._is_allowed(username):
            return

        logger.info("button clicked by %s in chat %s: %s", username, chat_id, data)
        await self._converse(chat_id, thread_id, username, data, [])

    async def _converse(self, chat_id: int, thread_id: int | None, username: str,
                        text: str, image_urls: Sequence[str]) -> str | None:
        """Run the agent with live drafts; send the reply and return it, or None on error."""
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        streamer = asyncio.create_task(self.stream_to_telegram(chat_id, thread_id, _drain(queue)))
        try:
            reply = await self.agent.process_message(
                chat_id, thread_id, username, text, image_urls, queue.put_nowait, self.api
            )
        except Exception as exc:
            logger.error("agent error in chat %s: %s", chat_id, exc)
            reply = None
        finally:
            queue.put_nowait(None)
            with contextlib.suppress(Exception):
                await streamer

        if reply is None:
            await self.send_final(chat_id, thread_id, ERROR_REPLY)
            return None
        clean, buttons = extract_buttons(reply)
        await self.send_final(chat_id, thread_id, clean, buttons)
        return reply

    async def stream_to_telegram(self, chat_id: int, thread_id: int | None,
                                 deltas: AsyncIterable[str]) -> None:
        """Show accumulating output as a message draft, at most once per throttle period."""
        draft_id = time.time_ns() % 1_000_000_000
        accumulated = ""
        last_send = time.monotonic() - self.stream_throttle
        pending: asyncio.Task | None = None

        async for delta in deltas:
            accumulated += delta
            if pending is not None and not pending.done():
                continue
            if (len(accumulated.encode("utf-8")) > MIN_DRAFT_LEN
                    and time.monotonic() - last_send >= self.stream_throttle):
                draft = _strip_buttons_block(accumulated)
                pending = asyncio.create_task(
                    self._send_draft(chat_id, draft, draft_id, thread_id)
                )
                last_send = time.monotonic()

        if pending is not None:
            await pending

    async def _send_draft(self, chat_id: int, text: str, draft_id: int,
                          thread_id: int | None) -> None:
        try:
            await self.api.send_message_draft(chat_id, text, draft_id, thread_id)
        except Exception as exc:
            logger.debug("draft send failed: %s", exc)

    async def download_file_as_base64(self, file_id: str) -> str:
        file_path = await self.api.get_file_path(file_id)
        content = await self.api.download_file(file_path)
        logger.debug("file downloaded for vision: %d bytes", len(content))
        return base64.b64encode(content).decode("ascii")

    async def transcribe_voice(self, file_id: str) -> str:
        if self.stt is None:
            raise ConfigError("STT not configured (set GROQ_API_KEY)")
        file_path = await self.api.get_file_path(file_id)
        content = await self.api.download_file(file_path)
        logger.debug("voice file downloaded: %d bytes", len(content))
        return await self.stt.transcribe(content, "voice.ogg")

    async def send_final(self, chat_id: int, thread_id: int | None, text: str,
                         buttons: Sequence[Sequence[InlineButton]] | None = None) -> None:
        """Send the final reply; failures are logged, not raised."""
        try:
            await self.api.send_message(chat_id, text, thread_id, buttons)
        except Exception as exc:
            logger.error("send failed in chat %s: %s", chat_id, exc)