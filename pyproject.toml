[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "amyqueue"
version = "0.1.0"
description = "A Raft-based controller cluster with static and dynamic membership, an HTTP admin API and Prometheus metrics"
requires-python = ">=3.10"
dependencies = [
    "python-dotenv",
]
keywords = ["raft", "consensus", "cluster", "membership", "distributed", "prometheus"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
amyqueue-controller = "amyqueue.controller:main"
amyqueue-broker = "amyqueue.broker:main"
amyqueue-cli = "amyqueue.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["amyqueue"]

[tool.pytest.ini_options]
addopts = "-ra"
