[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "raopkit"
version = "0.1.0"
description = "Receiver-side building blocks for AirPlay audio (RAOP), clock sync and screen-mirroring streams"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["airplay", "raop", "rtp", "ntp", "h264", "mirroring", "audio", "streaming"]
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
    "Topic :: Multimedia :: Video :: Display",
    "Topic :: Multimedia :: Sound/Audio",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["raopkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
