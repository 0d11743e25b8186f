[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "noderemedy"
version = "0.1.0"
description = "Resource models, admission validation and reconcilers for fencing and remediating unhealthy cluster nodes"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "remediation", "fencing", "node-health", "taints", "clustering"]
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
    "Topic :: System :: Clustering",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["noderemedy"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
