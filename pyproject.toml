[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "powermodel"
version = "0.1.0"
description = "Power estimation models that attribute node power to containers, processes and nodes"
requires-python = ">=3.10"
dependencies = []
keywords = ["power", "energy", "estimation", "containers", "monitoring", "rapl", "acpi"]
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
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["powermodel"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
