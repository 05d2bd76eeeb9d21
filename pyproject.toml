[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "proxynode"
version = "0.1.0"
description = "Per-user connection, device and speed limits, traffic accounting, DNS config generation, sniffing and dispatch helpers for multi-user proxy nodes"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "proxy",
    "rate-limit",
    "token-bucket",
    "shadowsocks",
    "vmess",
    "vless",
    "trojan",
    "sniffing",
    "dns",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["proxynode"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
