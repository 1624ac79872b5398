[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kreconcile"
version = "0.1.0"
description = "Building blocks for resource reconcilers: request contexts, reference tracking and admission webhook adapters"
requires-python = ">=3.10"
dependencies = []
keywords = ["reconciler", "controller", "admission", "webhook", "tracker", "json-patch", "context"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kreconcile"]

[tool.hatch.build.targets.sdist]
include = ["kreconcile", "tests", "README.md"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
