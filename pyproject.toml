[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "agcalib"
version = "0.1.0"
description = "Pack, inspect and manage stereo calibration archives in single-file and multi-slot containers"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "stereo",
    "calibration",
    "remap",
    "archive",
    "zlib",
    "container",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Packaging",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
agcalib = "agcalib.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["agcalib"]

[tool.hatch.build.targets.sdist]
include = ["agcalib", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
