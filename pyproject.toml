[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "podcluster"
version = "0.1.0"
description = "A small cluster manager: master discovery broadcast, node registry with heartbeats, VM node creation and pod upload checking"
requires-python = ">=3.10"
keywords = ["cluster", "zeromq", "heartbeat", "pods", "node-registry", "virtual-machines"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "pyzmq",
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
podcluster-master = "podcluster.master:main"
podcluster-agent = "podcluster.agent:main"

[tool.hatch.build.targets.wheel]
packages = ["podcluster"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
