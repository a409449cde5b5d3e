[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpcipam"
version = "0.1.0"
description = "Node-level warm pool management of secondary VPC IP addresses for pods, with a Prometheus text parser and minimal metrics."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "ipam",
    "eni",
    "vpc",
    "kubernetes",
    "cni",
    "networking",
    "prometheus",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vpcipam"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
