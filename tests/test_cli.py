"""Tests for the command line interface."""

import json
import logging

import pytest
from click.testing import CliRunner

from event_import_pipeline.cli.main import cli
from event_import_pipeline.utils.logger import PACKAGE_LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def runner():
    return CliRunner()


def test_stages_graph(runner):
    result = runner.invoke(cli, ["stages", "graph"])

    assert result.exit_code == 0
    assert "validate-schema -> await-approval, geocode-batch" in result.output
    assert "completed (terminal)" in result.output


def test_stages_validate(runner):
    ok = runner.invoke(cli, ["stages", "validate", "geocode-batch", "create-events"])
    assert ok.exit_code == 0
    assert "valid: geocode-batch -> create-events" in ok.output

    bad = runner.invoke(cli, ["stages", "validate", "detect-schema", "completed"])
    assert bad.exit_code == 1


def test_ids_generate(runner):
    result = runner.invoke(cli, [
        "ids", "generate",
        "--dataset-id", "12",
        "--strategy-json", '{"type": "external", "externalIdPath": "meta.ref"}',
        "--row-json", '{"meta": {"ref": "INC-7"}}',
    ])

    assert result.exit_code == 0
    assert json.loads(result.output) == {"uniqueId": "12:ext:INC-7", "strategy": "external"}


def test_ids_generate_reports_failures(runner):
    result = runner.invoke(cli, [
        "ids", "generate",
        "--dataset-id", "12",
        "--strategy-json", '{"type": "external", "externalIdPath": "ref"}',
        "--row-json", "{}",
    ])

    assert result.exit_code == 1
    assert "Missing external ID at path: ref" in result.output


def test_ids_generate_rejects_bad_json(runner):
    result = runner.invoke(cli, [
        "ids", "generate", "--dataset-id", "1", "--strategy-json", "{", "--row-json", "{}",
    ])

    assert result.exit_code == 2
    assert "invalid JSON" in result.output


def test_run_imports_csv(runner, tmp_path, csv_writer):
    path = csv_writer(tmp_path / "events.csv", [{"ref": "A", "title": "x"}, {"ref": "B", "title": "y"}])

    result = runner.invoke(cli, ["-l", "ERROR", "run", str(path), "--id-field", "ref", "--batch-size", "1"])

    assert result.exit_code == 0, result.output
    assert "Stage: completed" in result.output
    assert '"totalEvents": 2' in result.output
