[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chatmate"
version = "0.1.0"
description = "A personal Telegram chat assistant backed by an OpenAI-compatible LLM, with long-term memory in SQLite."
requires-python = ">=3.11"
keywords = ["telegram", "bot", "llm", "assistant", "chat", "memory", "sqlite", "openrouter"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Communications :: Chat",
]
dependencies = [
    "httpx>=0.27",
    "aiosqlite>=0.20",
]

[project.optional-dependencies]
test = [
    "pytest>=8",
    "pytest-asyncio>=0.23",
    "respx>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["chatmate"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
