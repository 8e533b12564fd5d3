[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "memsim"
version = "0.1.0"
description = "Simulated memory server with multi-level page tables, swap space and a binary packet protocol"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "memory",
    "paging",
    "page-table",
    "swap",
    "operating-systems",
    "simulator",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Education",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
memsim = "memsim.server:main"

[tool.hatch.build.targets.wheel]
packages = ["memsim"]

[tool.pytest.ini_options]
addopts = "-ra"
