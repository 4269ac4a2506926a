[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "majula"
version = "0.1.0"
description = "Overlay network building blocks: typed messages, link records, cost-probing channels, reliable stream tunnelling stubs and a WebSocket gateway client."
requires-python = ">=3.10"
keywords = ["overlay", "networking", "pubsub", "rpc", "tunnel", "websocket"]
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
    "Topic :: System :: Networking",
]
dependencies = [
    "websocket-client",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["majula"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
