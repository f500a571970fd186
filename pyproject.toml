[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rpowhost"
version = "0.1.0"
description = "Host-side server for reusable proof-of-work tokens, with a provable B-tree spent-token database"
requires-python = ">=3.10"
dependencies = []
keywords = ["proof-of-work", "hashcash", "b-tree", "merkle", "sha1", "coprocessor"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security :: Cryptography",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rpowhost = "rpowhost.server:main"

[tool.hatch.build.targets.wheel]
packages = ["rpowhost"]

[tool.pytest.ini_options]
addopts = "-ra"
