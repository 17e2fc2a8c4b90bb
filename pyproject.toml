[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blekit"
version = "0.1.0"
description = "Bluetooth Low Energy building blocks: advertising packets, ATT client and server, and a GATT attribute database"
requires-python = ">=3.10"
dependencies = []
keywords = ["bluetooth", "ble", "gatt", "att", "advertising", "ibeacon"]
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
    "Topic :: Communications",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["blekit"]

[tool.pytest.ini_options]
addopts = "-ra"
