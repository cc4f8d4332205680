import asyncio
import json
import sqlite3

import yaml
from typer.testing import CliRunner

from conftest import TENANT, echo_step
from datachoreo import Core, load_config
from datachoreo.cli import app
from datachoreo.persistence import RunStatus, SQLiteExecutionStore
from datachoreo.persistence.models import utcnow

runner = CliRunner()


def _write_config(tmp_path):
    db_path = tmp_path / "cli.db"
    config_path = tmp_path / "datachoreo.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "database_url": f"sqlite://{db_path}",
                "engine": {"backoff_base": 0.01, "backoff_jitter": 0.0, "poll_interval_seconds": 0.05},
                "vault": {"master_key": "cli-master-key"},
                "compliance": {"anchor_secret": "cli-anchor-secret"},
            }
        )
    )
    return config_path, db_path


def _seed(config_path, db_path, process=True):
    async def _run():
        core = Core(config=load_config(str(config_path)), store=SQLiteExecutionStore(db_path))
        try:
            wf = await core.dispatcher.create_workflow(TENANT, "wf", [echo_step(0, "a")])
            result = await core.trigger(TENANT, wf.id, {"order": 7}, "cli-1")
            if process:
                await core.process_next_step(result.run_id)
            return result.run_id
        finally:
            await core.close()

    return asyncio.run(_run())


def test_run_show(tmp_path):
    config_path, db_path = _write_config(tmp_path)
    run_id = _seed(config_path, db_path)

    result = runner.invoke(app, ["--config", str(config_path), "run", "show", TENANT, run_id])
    assert result.exit_code == 0
    assert f"Run {run_id}: completed (step 1)" in result.stdout
    assert '"order": 7' in result.stdout


def test_run_show_hides_other_tenants(tmp_path):
    config_path, db_path = _write_config(tmp_path)
    run_id = _seed(config_path, db_path)

    result = runner.invoke(app, ["--config", str(config_path), "run", "show", "tenant-b", run_id])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_compliance_verify_and_tamper(tmp_path):
    config_path, db_path = _write_config(tmp_path)
    _seed(config_path, db_path)

    result = runner.invoke(app, ["--config", str(config_path), "compliance", "verify", TENANT])
    assert result.exit_code == 0
    assert f"Chain valid for {TENANT}" in result.stdout

    conn = sqlite3.connect(db_path)
    with conn:
        conn.execute(
            "UPDATE compliance_events SET payload = ? WHERE tenant_id = ? AND sequence = 1",
            (json.dumps({"forged": True}), TENANT),
        )
    conn.close()

    result = runner.invoke(app, ["--config", str(config_path), "compliance", "verify", TENANT])
    assert result.exit_code == 2
    assert "Chain INVALID" in result.stdout
    assert "digest_mismatch at sequence 1" in result.stdout


def test_compliance_anchor_and_export(tmp_path):
    config_path, db_path = _write_config(tmp_path)
    _seed(config_path, db_path)
    period = utcnow().strftime("%Y-%m-%d")

    result = runner.invoke(app, ["--config", str(config_path), "compliance", "anchor", TENANT, period])
    assert result.exit_code == 0
    assert f"Anchor {period}" in result.stdout

    result = runner.invoke(app, ["--config", str(config_path), "compliance", "anchor", TENANT, "1999-01-01"])
    assert result.exit_code == 0
    assert "No events" in result.stdout

    output = tmp_path / "export.json"
    result = runner.invoke(
        app, ["--config", str(config_path), "compliance", "export", TENANT, "--output", str(output)]
    )
    assert result.exit_code == 0
    data = json.loads(output.read_text())
    assert data["verification"]["valid"] is True
    assert [a["period"] for a in data["anchors"]] == [period]
    assert data["events"][0]["sequence"] == 1


def test_compliance_anchor_rejects_bad_period(tmp_path):
    config_path, _ = _write_config(tmp_path)
    result = runner.invoke(app, ["--config", str(config_path), "compliance", "anchor", TENANT, "yesterday"])
    assert result.exit_code == 1


def test_worker_commands(tmp_path):
    config_path, db_path = _write_config(tmp_path)
    run_id = _seed(config_path, db_path, process=False)

    result = runner.invoke(app, ["--config", str(config_path), "worker", "sweep"])
    assert result.exit_code == 0
    assert "Locks cleared: 0" in result.stdout

    result = runner.invoke(
        app, ["--config", str(config_path), "worker", "run", "--worker-id", "cli-worker", "--lifespan", "0.5"]
    )
    assert result.exit_code == 0
    assert "Starting worker: cli-worker" in result.stdout

    async def _status():
        store = SQLiteExecutionStore(db_path)
        try:
            return (await store.get_run(run_id)).status
        finally:
            await store.close()

    assert asyncio.run(_status()) == RunStatus.COMPLETED
