"""Tests for the typer CLI commands that read and repair persisted state."""

from typer.testing import CliRunner

from asip.contracts.schemas import Hypothesis, Project, Run, RunStatus
from asip.main import app
from asip.store.storage import SQLiteStorage

runner = CliRunner()


def _seed(db_path):
    storage = SQLiteStorage(db_path)
    project = storage.create_project(Project(name="Coatings"))
    run = storage.create_run(
        Run(
            project_id=project.id,
            target_spec_id="t",
            technical_assets_id="a",
            job_name="nightly",
            status=RunStatus.RUNNING,
        )
    )
    storage.create_hypotheses(
        [Hypothesis(project_id=project.id, run_id=run.id, hypothesis_number=1, title="Clear coat")]
    )
    storage.close()
    return project, run


def test_runs_command(tmp_path):
    db = tmp_path / "asip.db"
    project, run = _seed(db)

    result = runner.invoke(app, ["runs", project.id, "--db", str(db)])

    assert result.exit_code == 0
    assert run.id in result.output
    assert "nightly" in result.output


def test_hypotheses_command(tmp_path):
    db = tmp_path / "asip.db"
    project, _ = _seed(db)

    result = runner.invoke(app, ["hypotheses", project.id, "--db", str(db)])

    assert result.exit_code == 0
    assert "Clear coat" in result.output

    empty = runner.invoke(app, ["hypotheses", "other", "--db", str(db)])
    assert "No hypotheses found" in empty.output


def test_recover_command(tmp_path):
    db = tmp_path / "asip.db"
    _, run = _seed(db)

    result = runner.invoke(app, ["recover", "--db", str(db)])

    assert result.exit_code == 0
    assert "Marked 1 run(s) as interrupted" in result.output
    assert SQLiteStorage(db).get_run(run.id).status == RunStatus.INTERRUPTED


def test_run_requires_api_key(tmp_path, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    target = tmp_path / "target.md"
    assets = tmp_path / "assets.md"
    target.write_text("needs", encoding="utf-8")
    assets.write_text("assets", encoding="utf-8")

    result = runner.invoke(
        app, ["run", str(target), str(assets), "--db", str(tmp_path / "asip.db")]
    )

    assert result.exit_code == 1
    assert "GEMINI_API_KEY not set" in result.output
