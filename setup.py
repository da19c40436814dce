"""
Setup script for Event Import Pipeline

An async bulk-import pipeline that turns uploaded or fetched spreadsheet files
into event records, with duplicate analysis, unique ID strategies, type
transformation rules and a guarded stage state machine.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Event Import Pipeline

    Batch import of CSV and spreadsheet rows into event records: cached URL
    fetching, duplicate analysis, unique ID generation, type transformations
    and a validated import-job stage machine.
    """

setup(
    name="event-import-pipeline",
    version="1.0.0",
    description="Async bulk-import pipeline for turning data files into event records",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Event Import Pipeline Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Database",
    ],
    keywords="import, etl, csv, events, deduplication, cache, async",
    packages=find_packages(exclude=["tests", "tests.*", "examples", "examples.*"]),
    python_requires=">=3.9",
    install_requires=[
        # Core dependencies
        "click>=8.0.0",

        # Async file and network I/O
        "aiofiles>=23.1.0",
        "httpx>=0.24.0",

        # Spreadsheet reading
        "pandas>=1.5.0",
        "openpyxl>=3.1.0",
        "xlrd>=2.0.1",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "event-import-pipeline=event_import_pipeline.cli.main:main",
            "eip=event_import_pipeline.cli.main:main",
        ],
    },
)
