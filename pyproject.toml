[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "stmbench"
version = "0.1.0"
description = "Lock-based transactional memory region, bank-workload grader and thread-synchronization examples"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "transactional memory",
    "stm",
    "concurrency",
    "locks",
    "benchmark",
    "threads",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
    "Topic :: System :: Benchmark",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
stmbench-grading = "stmbench.grading:main"
stmbench-counters = "stmbench.counters:main"
stmbench-elections = "stmbench.elections:main"
stmbench-procon = "stmbench.procon:main"

[tool.hatch.build.targets.wheel]
packages = ["stmbench"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
