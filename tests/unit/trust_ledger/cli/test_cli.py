"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from trust_ledger import __version__
from trust_ledger.cli.main import cli
from trust_ledger.core.crypto import KeyPair


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def env(tmp_path):
    return {
        "TRUST_LEDGER_DB": str(tmp_path / "cli.db"),
        "LEDGER_MODE": "local",
        "BLOB_FORCE_MOCK": "true",
    }


def test_version(runner):
    result = runner.invoke(cli, ["version"])
    assert result.exit_code == 0
    assert result.output.strip() == f"Trust Ledger v{__version__}"


def test_keygen_produces_loadable_key(runner):
    result = runner.invoke(cli, ["keygen"])

    assert result.exit_code == 0
    keys = json.loads(result.output)
    assert KeyPair.from_private_hex(keys["private_key"]).public_hex() == keys["public_key"]


def test_index_once_prints_stats(runner, env):
    result = runner.invoke(cli, ["index", "--once"], env=env)

    assert result.exit_code == 0, result.output
    stats = json.loads(result.output)
    assert stats["applied"] == 0
    assert stats["errors"] == {}


def test_score_unknown_dataset_exits_with_error(runner, env):
    result = runner.invoke(cli, ["score", "dataset-missing", "--preview"], env=env)

    assert result.exit_code == 1
    assert "Dataset dataset-missing not found" in result.output


def test_history_unknown_dataset_exits_with_error(runner, env):
    result = runner.invoke(cli, ["history", "dataset-missing"], env=env)
    assert result.exit_code == 1


def test_invalid_configuration_is_reported(runner, env):
    result = runner.invoke(cli, ["index", "--once"], env={**env, "LEDGER_MODE": "sideways"})
    assert result.exit_code != 0
