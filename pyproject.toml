[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pagestore"
version = "0.1.0"
description = "Page storage primitives: a 64-way bit-tree id allocator, a buddy page allocator, region layouts and a locked memory-mapped file"
requires-python = ">=3.10"
dependencies = [
    "portalocker",
]
keywords = ["database", "storage", "allocator", "buddy-allocator", "bitmap", "mmap", "pages"]
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
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["pagestore"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
