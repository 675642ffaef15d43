"""Tests for the compswap CLI."""
import json
import re

import pytest
import yaml
from click.testing import CliRunner

from compswap.cli import main
from compswap.config import load_config
from compswap.runner import build_runtime


@pytest.fixture
def home(tmp_path):
    return tmp_path / "home"


@pytest.fixture
def invoke(home):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(main, list(args), env={"COMPSWAP_HOME": str(home), "COMPSWAP_LOG_LEVEL": "WARNING"})

    return _invoke


@pytest.fixture
def initialized(invoke, home, make_definition, make_element):
    """Run init, then seed one project, one pipeline and component B@2."""
    result = invoke("init")
    assert result.exit_code == 0, result.output

    runtime = build_runtime(load_config(home / "config.yaml"))
    runtime.directory.add_project("proj-1", 1)
    runtime.definitions.add_pipeline(
        "pipe-1", make_definition(make_element("A", {"srcPath": "/x", "mode": "m"})), project_id="proj-1"
    )
    component_dir = runtime.config.catalog_dir / "B"
    component_dir.mkdir(parents=True)
    (component_dir / "2.yaml").write_text(yaml.safe_dump({"name": "B step", "input": ["path", "mode"]}))
    (component_dir / "install.yaml").write_text(yaml.safe_dump({"all": True}))
    return runtime


def _write_request(tmp_path, **overrides):
    request = {
        "creator": "alice",
        "scope": {"project": "proj-1"},
        "rules": [{
            "source": {"code": "A", "version": "1"},
            "target": {"code": "B", "version": "2"},
            "remap": [{"toParamName": "path", "fromParamName": "srcPath"}],
        }],
    }
    request.update(overrides)
    path = tmp_path / "request.yaml"
    path.write_text(yaml.safe_dump(request))
    return path


def _created_job_id(output):
    match = re.search(r"Created job (\S+) with", output)
    assert match, output
    return match.group(1)


def test_init_writes_config(invoke, home):
    result = invoke("init")

    assert result.exit_code == 0, result.output
    assert "Initialized compswap config" in result.output
    config = load_config(home / "config.yaml")
    assert config.sqlite_file == home / "compswap.db"
    assert config.sqlite_file.exists()
    assert config.catalog_dir.is_dir()


def test_init_refuses_to_overwrite(invoke):
    invoke("init")

    result = invoke("init")
    assert result.exit_code == 1
    assert "already exists" in result.output

    assert invoke("init", "--force").exit_code == 0


def test_commands_need_config(invoke):
    result = invoke("tick")

    assert result.exit_code == 1
    assert "Config not loaded" in result.output
    assert "compswap init" in result.output


def test_job_lifecycle(invoke, initialized, tmp_path):
    """Create a job, tick it to completion and inspect the result."""
    result = invoke("jobs", "create", str(_write_request(tmp_path)))
    assert result.exit_code == 0, result.output
    job_id = _created_job_id(result.output)

    result = invoke("jobs", "list", "--status", "INIT")
    assert job_id in result.output

    result = invoke("tick", "--json")
    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["outcome"] == "completed"
    assert report["job_id"] == job_id
    assert report["stats"]["mutated"] == 1

    result = invoke("jobs", "show", job_id)
    assert result.exit_code == 0
    assert "Status: SUCCESS" in result.output
    assert "A@1 -> B@2" in result.output

    result = invoke("history", job_id)
    assert "SUCCESS" in result.output
    assert "pipeline pipe-1  v1 -> v2" in result.output

    result = invoke("tick")
    assert result.exit_code == 0
    assert "idle" in result.output

    result = invoke("jobs", "requeue", job_id)
    assert result.exit_code == 1
    assert "no rules left" in result.output


def test_requeue_failed_rule(invoke, initialized, tmp_path):
    request = _write_request(tmp_path, rules=[{
        "source": {"code": "A", "version": "1"},
        "target": {"code": "Z", "version": "9"},
    }])
    job_id = _created_job_id(invoke("jobs", "create", str(request)).output)
    invoke("tick")

    result = invoke("jobs", "requeue", job_id, "--creator", "bob")

    assert result.exit_code == 0, result.output
    assert f"Requeued {job_id} as" in result.output
    new_job = initialized.job_store.list_jobs(limit=10)[-1]
    assert new_job.creator == "bob"


def test_create_rejects_bad_request(invoke, initialized, tmp_path):
    request = _write_request(tmp_path, scope={"project": "proj-1", "all_projects": True})

    result = invoke("jobs", "create", str(request))

    assert result.exit_code == 1
    assert "Invalid job request" in result.output


def test_show_unknown_job(invoke, initialized):
    result = invoke("jobs", "show", "missing")

    assert result.exit_code == 1
    assert "Unknown job" in result.output


def test_run_with_max_ticks(invoke, initialized):
    result = invoke("run", "--interval", "0.01", "--max-ticks", "2")

    assert result.exit_code == 0, result.output
    assert "2 tick(s)" in result.output


def test_history_without_records(invoke, initialized):
    result = invoke("history", "nothing")

    assert result.exit_code == 0
    assert "No records found." in result.output
