[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "feosutils"
version = "0.5.0"
description = "Host utilities for a minimal Linux init system: logging, host information, IPv6 network bring-up and SR-IOV setup"
requires-python = ">=3.10"
dependencies = []
keywords = ["init", "dhcpv6", "netlink", "sriov", "icmpv6", "logging", "linux", "hypervisor"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Operating System",
    "Topic :: System :: Networking",
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["feosutils"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
