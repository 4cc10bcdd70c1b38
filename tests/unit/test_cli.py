import asyncio

import pytest
import yaml
from typer.testing import CliRunner

from conftest import PIPELINE, TENANT, Recorder, make_engine
from flowcore.cli import app
from flowcore.persistence import SQLiteWorkflowStore

runner = CliRunner()


@pytest.fixture
def database(tmp_path, monkeypatch):
    db_path = tmp_path / "wf.db"
    monkeypatch.setenv("FLOWCORE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("FLOWCORE_DATABASE_URL", f"sqlite://{db_path}")
    return db_path


def _seed(db_path) -> str:
    async def run() -> str:
        engine = make_engine(Recorder(), store=SQLiteWorkflowStore(db_path))
        try:
            execution = await engine.start_execution(TENANT, "approval", "1")
            await engine.append_event(TENANT, execution.execution_id, "Submit")
            return execution.execution_id
        finally:
            await engine.close()

    return asyncio.run(run())


def test_execution_list_and_filter(database):
    execution_id = _seed(database)

    result = runner.invoke(app, ["execution", "list", TENANT])
    assert result.exit_code == 0, result.output
    assert execution_id in result.output
    assert "PendingApproval" in result.output

    result = runner.invoke(app, ["execution", "list", TENANT, "--status", "completed"])
    assert result.exit_code == 0, result.output
    assert "No executions found" in result.output


def test_execution_show_and_missing(database):
    execution_id = _seed(database)

    result = runner.invoke(app, ["execution", "show", TENANT, execution_id])
    assert result.exit_code == 0, result.output
    assert "waiting" in result.output
    assert "notify_approver" in result.output
    assert "reminder" in result.output

    result = runner.invoke(app, ["execution", "show", TENANT, "missing"])
    assert result.exit_code == 1
    assert "Execution not found" in result.output


def test_execution_history(database):
    execution_id = _seed(database)

    result = runner.invoke(app, ["execution", "history", TENANT, execution_id])
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert lines[0].startswith("1\tworkflow.started")
    assert lines[1].startswith("2\tSubmit\tDraft -> PendingApproval")


def test_definition_validate(tmp_path):
    good = tmp_path / "good.yaml"
    good.write_text(yaml.safe_dump(PIPELINE))
    result = runner.invoke(app, ["definition", "validate", str(good)])
    assert result.exit_code == 0, result.output
    assert "pipeline@1: 2 transitions OK" in result.output

    broken = dict(PIPELINE, final_states=["idle"])
    bad = tmp_path / "bad.yaml"
    bad.write_text(yaml.safe_dump(broken))
    result = runner.invoke(app, ["definition", "validate", str(bad)])
    assert result.exit_code == 1
    assert "Invalid" in result.output

    result = runner.invoke(app, ["definition", "validate", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
