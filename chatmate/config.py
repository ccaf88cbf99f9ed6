"""Application configuration loaded from a TOML file and the environment."""

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, get_args, get_origin
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Moscow"
DEFAULT_API_BASE = "https://openrouter.ai/api/v1"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096
DEFAULT_STT_API_BASE = "https://api.groq.com/openai/v1"
DEFAULT_STT_MODEL = "whisper-large-v3"
DEFAULT_STREAM_THROTTLE_MS = 300
DEFAULT_POLL_INTERVAL_SECS = 15
DEFAULT_EMBEDDING_MODEL = "qwen/qwen3-embedding-8b"

ENV_PREFIX = "agent__"
ENV_SEPARATOR = "__"

_TRUTHY = {"true", "1", "yes", "on"}
_FALSY = {"false", "0", "no", "off"}


@dataclass
class AgentConfig:
    max_tool_iterations: int
    max_history_messages: int
    prompt_files: list[str]
    timezone: str = DEFAULT_TIMEZONE


@dataclass
class LlmConfig:
    model: str
    api_base: str = DEFAULT_API_BASE
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS


@dataclass
class SttConfig:
    api_base: str = DEFAULT_STT_API_BASE
    model: str = DEFAULT_STT_MODEL


@dataclass
class TelegramConfig:
    allowed_users: list[str] = field(default_factory=list)
    stream_throttle_ms: int = DEFAULT_STREAM_THROTTLE_MS


@dataclass
class MemoryConfig:
    db_path: str


@dataclass
class SchedulerConfig:
    enabled: bool = True
    poll_interval_secs: int = DEFAULT_POLL_INTERVAL_SECS


@dataclass
class EmbeddingsConfig:
    enabled: bool = False
    model: str = DEFAULT_EMBEDDING_MODEL


@dataclass
class Config:
    agent: AgentConfig
    llm: LlmConfig
    telegram: TelegramConfig
    memory: MemoryConfig
    stt: SttConfig = field(default_factory=SttConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        """Build a configuration from nested mappings, applying defaults."""
        if not isinstance(data, Mapping):
            raise ConfigError("configuration root must be a table")
        return _build(cls, data, "")

    @classmethod
    def load(cls, path: str | os.PathLike[str] = "config",
             environ: Mapping[str, str] | None = None) -> "Config":
        """Read the TOML file, overlay AGENT__* variables, and validate."""
        env = os.environ if environ is None else environ
        config_file = _find_config_file(Path(path))
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{config_file}: {exc}") from exc

        _merge_env(data, env)
        config = cls.from_dict(data)

        users = env.get("TELEGRAM_ALLOWED_USERS")
        if users is not None:
            config.telegram.allowed_users = [
                user.strip() for user in users.split(",") if user.strip()
            ]

        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigError if any setting is unusable."""
        try:
            ZoneInfo(self.agent.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"invalid timezone: {self.agent.timezone}") from exc

        for prompt_file in self.agent.prompt_files:
            if not Path(prompt_file).exists():
                raise ConfigError(f"prompt file not found: {prompt_file}")

        if self.agent.max_tool_iterations == 0:
            raise ConfigError("max_tool_iterations must be > 0")
        if self.agent.max_history_messages == 0:
            raise ConfigError("max_history_messages must be > 0")

        if not self.llm.model:
            raise ConfigError("llm.model is required")
        if not self.llm.api_base:
            raise ConfigError("llm.api_base is required")

        if not self.telegram.allowed_users:
            raise ConfigError("telegram.allowed_users must not be empty")

        parent = Path(self.memory.db_path).parent
        if str(parent) not in ("", ".") and not parent.exists():
            logger.warning("db parent dir %s doesn't exist, will be created", parent)


def _find_config_file(path: Path) -> Path:
    if path.is_file():
        return path
    candidate = path.parent / f"{path.name}.toml"
    if candidate.is_file():
        return candidate
    raise ConfigError(f'configuration file "{path}" not found')


def _merge_env(data: dict[str, Any], environ: Mapping[str, str]) -> None:
    for key, value in environ.items():
        lowered = key.lower()
        if not lowered.startswith(ENV_PREFIX):
            continue
        parts = lowered[len(ENV_PREFIX):].split(ENV_SEPARATOR)
        if not all(parts):
            continue
        node = data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = value


def _build(cls: type, data: Mapping[str, Any], path: str) -> Any:
    kwargs = {}
    for spec in fields(cls):
        where = f"{path}.{spec.name}" if path else spec.name
        if spec.name in data:
            kwargs[spec.name] = _coerce(data[spec.name], spec.type, where)
        elif spec.default is MISSING and spec.default_factory is MISSING:
            raise ConfigError(f"missing field `{where}`")
    return cls(**kwargs)


def _coerce(value: Any, expected: Any, where: str) -> Any:
    if is_dataclass(expected):
        if not isinstance(value, Mapping):
            raise ConfigError(f"`{where}` must be a table")
        return _build(expected, value, where)

    if get_origin(expected) is list:
        if not isinstance(value, list):
            raise ConfigError(f"`{where}` must be a list")
        (item_type,) = get_args(expected)
        return [_coerce(item, item_type, f"{where}[{n}]") for n, item in enumerate(value)]

    if expected is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUTHY:
                return True
            if lowered in _FALSY:
                return False
        raise ConfigError(f"`{where}` must be a boolean")

    if expected is int:
        number: Any = value
        if isinstance(value, str):
            try:
                number = int(value.strip())
            except ValueError:
                number = None
        if isinstance(number, bool) or not isinstance(number, int):
            raise ConfigError(f"`{where}` must be an integer")
        if number < 0:
            raise ConfigError(f"`{where}` must not be negative")
        return number

    if expected is float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                pass
        raise ConfigError(f"`{where}` must be a number")

    if expected is str:
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        raise ConfigError(f"`{where}` must be a string")

    return value