[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hopprobe"
version = "0.1.0"
description = "Building network probe packets and matching ICMP replies to the probes that caused them"
requires-python = ">=3.10"
dependencies = []
keywords = ["traceroute", "icmp", "udp", "tcp", "probe", "network", "mpls"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["hopprobe"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
