[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunnelkit"
version = "0.1.0"
description = "Building blocks for encrypted tunnels: an HTTP-to-SOCKS5 proxy, datagram backhauls, blind-signature keys, forward error correction and structured concurrency helpers."
requires-python = ">=3.10"
keywords = [
    "proxy",
    "socks5",
    "http-proxy",
    "tunnel",
    "fec",
    "reed-solomon",
    "blind-signature",
    "asyncio",
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
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]
dependencies = [
    "cryptography",
    "msgpack",
    "multidict",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
tunnelkit-http-proxy = "tunnelkit.http_proxy:main"

[tool.hatch.build.targets.wheel]
packages = ["tunnelkit"]

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
