"""Telegram chat assistant with streaming LLM replies and long-term SQLite memory."""

__version__ = "0.1.0"