"""Shared fixtures for the event import pipeline tests."""

import csv
from pathlib import Path
from typing import Any, Dict, List

import pytest

from event_import_pipeline.core.config import BatchConfig, PipelineConfig
from event_import_pipeline.jobs.base import JobHandlerContext
from event_import_pipeline.utils.job_queue import InMemoryJobQueue
from event_import_pipeline.utils.persistence import InMemoryPersistence


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def write_csv(path: Path, rows: List[Dict[str, Any]]) -> Path:
    """Write ``rows`` as CSV with a header taken from the first row."""
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        writer.writerows(rows)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def persistence(clock):
    return InMemoryPersistence(clock=clock)


@pytest.fixture
def job_queue():
    return InMemoryJobQueue()


@pytest.fixture
def small_batch_config():
    return PipelineConfig(batch=BatchConfig(event_creation=2, duplicate_analysis=2, schema_detection=2))


@pytest.fixture
def handler_context(persistence, job_queue, small_batch_config, clock):
    return JobHandlerContext(
        persistence=persistence,
        job_queue=job_queue,
        config=small_batch_config,
        clock=clock,
    )


@pytest.fixture
def csv_writer():
    return write_csv
