[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "booky"
version = "0.1.0"
description = "Swedish OSS and periodic summary filings from card-payment accounting facts, with e-mail notifications, a scheduler and an admin WSGI API."
requires-python = ">=3.10"
dependencies = [
    "werkzeug",
]
keywords = [
    "bookkeeping",
    "accounting",
    "vat",
    "oss",
    "periodic summary",
    "skatteverket",
    "filings",
    "wsgi",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Financial and Insurance Industry",
    "Intended Audience :: Developers",
    "Natural Language :: English",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Financial :: Accounting",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["booky"]

[tool.hatch.build.targets.sdist]
include = [
    "booky",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
