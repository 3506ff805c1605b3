[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fslatency"
version = "0.4.0"
description = "Long-running filesystem write latency measurement agent and collecting server over UDP"
requires-python = ">=3.10"
keywords = ["filesystem", "latency", "disk", "monitoring", "udp", "graphite", "fsync"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Filesystems",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
fslatency = "fslatency.agent:main"
fslatency-server = "fslatency.server:main"

[tool.hatch.build.targets.wheel]
packages = ["fslatency"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
