[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "coinplan"
version = "0.1.0"
description = "Coin selection with branch and bound, and spending plans for taproot outputs"
requires-python = ">=3.10"
dependencies = []
keywords = ["bitcoin", "coin-selection", "branch-and-bound", "taproot", "miniscript"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Financial",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["coinplan"]

[tool.pytest.ini_options]
addopts = "-ra"
