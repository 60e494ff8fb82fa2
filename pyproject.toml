[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rmlxcache"
version = "0.1.0"
description = "KV cache bookkeeping for transformer inference: paged blocks, prefix tries, rotating, quantized and batch caches, and prompt cache files."
requires-python = ">=3.10"
dependencies = [
    "numpy",
    "psutil",
]
keywords = ["kv-cache", "transformer", "inference", "llm", "prefix-cache", "quantization", "safetensors"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["rmlxcache"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
