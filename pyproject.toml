[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aevon"
version = "0.1.0"
description = "Usage-event storage and checkpointed, time-bucketed pre-aggregation"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "events",
    "metering",
    "usage",
    "aggregation",
    "time-series",
    "postgresql",
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
    "Topic :: Database",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["aevon"]

[tool.hatch.build.targets.sdist]
include = [
    "aevon",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
