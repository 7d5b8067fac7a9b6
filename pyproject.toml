[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "metrikad"
version = "0.1.0"
description = "Blockchain node monitoring agent core: event model, priority buffering, Flow node discovery and cloud metadata lookup"
requires-python = ">=3.10"
keywords = ["monitoring", "agent", "blockchain", "flow", "buffer", "telemetry", "cloud-metadata"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["metrikad"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
