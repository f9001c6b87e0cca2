[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "netavark"
version = "0.1.0"
description = "Container network setup: bridge, macvlan and ipvlan drivers, netlink control and an external plugin interface"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "containers",
    "networking",
    "netlink",
    "bridge",
    "macvlan",
    "ipvlan",
    "network-namespace",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["netavark"]

[tool.hatch.build.targets.sdist]
include = ["netavark", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
