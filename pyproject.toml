[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "captiveap"
version = "0.1.0"
description = "A small captive-portal access point: DHCP, catch-all DNS and an LED test web page"
requires-python = ">=3.10"
dependencies = []
keywords = ["dhcp", "dns", "captive-portal", "access-point", "http"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
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

[project.scripts]
captiveap = "captiveap.access_point:main"

[tool.hatch.build.targets.wheel]
packages = ["captiveap"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
