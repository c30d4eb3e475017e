[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "thorofare"
version = "0.2.0"
description = "Benchmark that compares slot and account update timing between two Solana Geyser gRPC endpoints"
requires-python = ">=3.11"
keywords = ["solana", "geyser", "grpc", "benchmark", "latency", "richat", "yellowstone"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Benchmark",
    "Topic :: System :: Networking :: Monitoring",
]
dependencies = [
    "grpcio",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
thorofare = "thorofare.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["thorofare"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
