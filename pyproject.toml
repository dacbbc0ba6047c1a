[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "branchstack"
version = "0.1.0"
description = "Work out how the local branches of a Git repository stack, with a persistent cache of the result"
requires-python = ">=3.10"
dependencies = []
keywords = ["git", "stack", "branches", "pull-requests", "merge-base"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Version Control :: Git",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["branchstack"]

[tool.pytest.ini_options]
addopts = "-ra"
