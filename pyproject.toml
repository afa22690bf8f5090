[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "advocache"
version = "0.1.0"
description = "Multi-tenant in-memory LRU cache with TTL, named locks, leader/replica replication and an embeddable WebSocket reader."
requires-python = ">=3.10"
keywords = [
    "cache",
    "lru",
    "ttl",
    "websocket",
    "replication",
    "distributed-lock",
    "multi-tenant",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Database :: Database Engines/Servers",
]
dependencies = [
    "bcrypt",
    "websockets",
    "python-dotenv",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["advocache"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
