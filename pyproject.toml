[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blocksync"
version = "0.1.0"
description = "Concurrent changed-block replication pipeline with hash dedup, LZ4 compression and stunnel/rsync tunnelling"
requires-python = ">=3.11"
keywords = [
    "replication",
    "block device",
    "sync",
    "lz4",
    "deduplication",
    "stunnel",
    "rsync",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Archiving :: Mirroring",
]
dependencies = [
    "lz4",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["blocksync"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
