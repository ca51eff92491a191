[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "shardconf"
version = "0.1.0"
description = "Shard configuration controller, controller client and sharded key/value replica state with shard migration"
requires-python = ">=3.10"
dependencies = []
keywords = ["sharding", "key-value", "replication", "configuration", "distributed", "rebalancing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["shardconf"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
