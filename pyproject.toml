[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "binsize"
version = "0.1.0"
description = "Analyze the size composition of binaries by examining symbols and mapping them to crates."
requires-python = ">=3.10"
dependencies = []
keywords = ["binary", "size", "symbols", "elf", "mach-o", "pe", "pdb", "cargo", "bloat"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
binsize = "binsize.report:main"

[tool.hatch.build.targets.wheel]
packages = ["binsize"]

[tool.pytest.ini_options]
addopts = "-ra"
