[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "suipanel"
version = "0.1.0"
description = "Core building blocks of a proxy management panel: settings, logging, SQLite models and migrations, database export and import, HTTP helpers and traffic tracking."
requires-python = ">=3.10"
keywords = ["proxy", "panel", "sqlite", "migration", "traffic", "statistics", "wsgi"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Database",
    "Topic :: System :: Networking",
]
dependencies = [
    "bcrypt",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["suipanel"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
