"""
Tests for the command line interface.
"""

import json
import sys
from datetime import timedelta

import pytest
import structlog

from vpsbilling.billing.ledger import Ledger
from vpsbilling.cli import build_parser, main
from vpsbilling.core.clock import utcnow
from vpsbilling.persistence.database import Database

from conftest import seed_account, seed_instance, seed_plan


@pytest.fixture(autouse=True)
def reset_logging():
    """main() configures structlog globally; undo it after each test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli_env(temp_db, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{temp_db}")
    monkeypatch.setenv("LOG_LEVEL", "error")
    # Keep log lines emitted before main() configures logging off stdout.
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=sys.stderr))
    return temp_db


class TestParser:

    def test_sweep_defaults_to_embedded(self):
        args = build_parser().parse_args(["sweep"])
        assert args.executor_id == "embedded"

    def test_history_arguments(self):
        args = build_parser().parse_args(["history", "inst-1", "--limit", "5", "--json"])
        assert args.instance_id == "inst-1"
        assert args.limit == 5
        assert args.json


class TestCommands:

    def test_init_db(self, cli_env, capsys):
        main(["init-db"])
        assert "Database initialized (sqlite)" in capsys.readouterr().out

    def test_sweep_and_history(self, cli_env, capsys):
        db = Database(f"sqlite:///{cli_env}")
        db.initialize()
        seed_plan(db)
        seed_account(Ledger(db))
        seed_instance(db, created_at=utcnow() - timedelta(hours=1))

        main(["sweep", "--executor-id", "ops-manual"])
        summary = json.loads(capsys.readouterr().out)
        assert summary["instances_billed"] == 1

        main(["history", "inst-1", "--json"])
        cycles = json.loads(capsys.readouterr().out)
        assert [c["status"] for c in cycles] == ["billed"]
        assert cycles[0]["executor_id"] == "ops-manual"

    def test_status_json(self, cli_env, capsys):
        main(["sweep", "--executor-id", "ops-manual"])
        capsys.readouterr()

        main(["status", "--json"])
        data = json.loads(capsys.readouterr().out)

        assert data["executors"][0]["executor_id"] == "ops-manual"
        assert data["daemon"]["executor_id"] == "ops-manual"

    def test_invalid_config_exits(self, cli_env, monkeypatch, capsys):
        monkeypatch.setenv("BILLING_INTERVAL_SECONDS", "never")
        with pytest.raises(SystemExit):
            main(["status"])
        assert "Configuration error" in capsys.readouterr().out
