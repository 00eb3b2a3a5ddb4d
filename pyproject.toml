[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vmsandbox"
version = "0.1.0"
description = "Building blocks for running container sandboxes inside cloud-hypervisor virtual machines"
requires-python = ">=3.12"
dependencies = []
keywords = [
    "sandbox",
    "virtual-machine",
    "cloud-hypervisor",
    "containers",
    "virtiofs",
    "vsock",
    "tap",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vmsandbox"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py312"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.12"
warn_unused_ignores = true
warn_redundant_casts = true
