"""
Tests for CLI commands — deploy, destroy, bootstrap, read-only views,
workspaces and pipeline generation.

Every invocation runs with ``--mock`` against the sample project, so the
mock world and local state store persist between invocations of one test.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from stackdeploy.main import cli


@pytest.fixture
def invoke(project_file: Path):
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(cli, ["--config", str(project_file), "--mock", *args])

    return _invoke


class TestCLIGlobal:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "provision and tear down" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_missing_config(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["--config", str(tmp_path / "none.yml"), "deploy", "dev"])
        assert result.exit_code == 1
        assert "not found" in result.output


# ── Deploy / destroy ────────────────────────────────────────────────


class TestDeployCommand:
    def test_deploy(self, invoke):
        result = invoke("deploy", "dev")

        assert result.exit_code == 0
        assert "[mock] apply dev" in result.output
        assert "+ bucket.assets" in result.output
        assert "+ function.api" in result.output
        assert "api_url" in result.output
        assert "arn:mock" not in result.output

    def test_deploy_json(self, invoke):
        result = invoke("-q", "deploy", "dev", "--json")

        data = json.loads(result.output)
        assert result.exit_code == 0
        assert data["exit_code"] == 0
        assert data["environment"] == "dev"
        assert data["outputs"]["bucket_arn"] == "(sensitive)"
        assert data["report"]["counts"]["created"] == 2

    def test_variable_override(self, invoke):
        result = invoke("deploy", "dev", "--var", "use_cdn=true")
        assert result.exit_code == 0
        assert "+ edge.cdn" in result.output

    def test_bad_variable_syntax(self, invoke, project_file):
        result = invoke("deploy", "dev", "--var", "use_cdn")
        assert result.exit_code == 1
        assert "key=value" in result.output
        assert not (project_file.parent / ".stackdeploy" / "mock-world.json").exists()

    def test_bad_variable_syntax_json(self, invoke):
        result = invoke("-q", "deploy", "dev", "--var", "=true", "--json")
        data = json.loads(result.output)
        assert result.exit_code == 1
        assert data["exit_code"] == 1
        assert "key=value" in data["error"]

    def test_project_argument_must_match(self, invoke):
        assert invoke("deploy", "dev", "chat-app").exit_code == 0
        assert invoke("deploy", "dev", "other-app").exit_code == 1

    def test_missing_artifact(self, invoke, project_file):
        (project_file.parent / "build" / "api.zip").unlink()
        result = invoke("deploy", "dev")
        assert result.exit_code == 1
        assert "function.api" in result.output

    def test_second_deploy_changes_nothing(self, invoke):
        invoke("deploy", "dev")
        result = invoke("-q", "deploy", "dev", "--json")
        counts = json.loads(result.output)["report"]["counts"]
        assert counts["created"] == 0
        assert counts["unchanged"] == 2


class TestDestroyCommand:
    def test_destroy(self, invoke):
        invoke("deploy", "dev")

        result = invoke("destroy", "dev", "--confirm=dev")

        assert result.exit_code == 0
        assert "- function.api" in result.output
        assert "- bucket.assets" in result.output

    def test_confirmation_mismatch(self, invoke):
        invoke("deploy", "dev")

        result = invoke("destroy", "dev", "--confirm=prod")

        assert result.exit_code == 3
        assert "Refusing to destroy 'dev'" in result.output

    def test_confirmation_required(self, invoke):
        assert invoke("destroy", "dev").exit_code == 3

    def test_never_deployed(self, invoke):
        result = invoke("destroy", "test", "--confirm=test")
        assert result.exit_code == 1
        assert "Unknown workspace" in result.output


class TestBootstrapCommand:
    def test_bootstrap(self, invoke):
        result = invoke("bootstrap", "dev")

        assert result.exit_code == 0
        assert "Container: created" in result.output
        assert "Workspace: dev" in result.output

    def test_rerun(self, invoke):
        invoke("bootstrap")
        result = invoke("bootstrap")
        assert result.exit_code == 0
        assert "Container: exists" in result.output

    def test_json(self, invoke):
        data = json.loads(invoke("-q", "bootstrap", "--json").output)
        assert data["bootstrap"]["created_container"] is True
        assert data["exit_code"] == 0


# ── Read-only views ─────────────────────────────────────────────────


class TestPlanCommand:
    def test_plan(self, invoke):
        result = invoke("plan", "dev")

        assert result.exit_code == 0
        assert "+ bucket.assets" in result.output
        assert "create 2" in result.output

    def test_plan_json(self, invoke):
        data = json.loads(invoke("-q", "plan", "dev", "--json").output)
        assert data["summary"]["create"] == 2
        assert data["serial"] is None

    def test_plan_destroy(self, invoke):
        invoke("deploy", "dev")
        result = invoke("plan", "dev", "--destroy")
        assert "- bucket.assets" in result.output
        assert "delete 2" in result.output

    def test_bad_variable_syntax(self, invoke):
        result = invoke("plan", "dev", "--var", "memory")
        assert result.exit_code == 1
        assert "key=value" in result.output


class TestStatusCommand:
    def test_status(self, invoke):
        invoke("deploy", "dev")

        result = invoke("status")

        assert result.exit_code == 0
        assert "chat-app" in result.output
        assert "dev (default)" in result.output
        assert "2 instance(s)" in result.output
        assert "test  — no workspace" in result.output

    def test_status_json(self, invoke):
        data = json.loads(invoke("-q", "status", "--json").output)
        assert data["project"] == "chat-app"
        assert [e["name"] for e in data["environments"]] == ["dev", "test", "prod"]


class TestOutputsCommand:
    def test_masked(self, invoke):
        invoke("deploy", "dev")

        result = invoke("outputs", "dev")

        assert "api_url = \"chat-app-dev-api.mock.local\"" in result.output
        assert "bucket_arn = \"(sensitive)\"" in result.output

    def test_show_sensitive(self, invoke):
        invoke("deploy", "dev")
        result = invoke("outputs", "dev", "--show-sensitive")
        assert "arn:mock:bucket:" in result.output

    def test_unknown_workspace(self, invoke):
        result = invoke("outputs", "prod")
        assert result.exit_code == 1


class TestDriftCommand:
    def test_no_drift(self, invoke):
        invoke("deploy", "dev")
        result = invoke("drift", "dev")
        assert result.exit_code == 0
        assert "No drift in dev" in result.output

    def test_drift_detected(self, invoke, project_file):
        invoke("deploy", "dev")
        world_file = project_file.parent / ".stackdeploy" / "mock-world.json"
        world = json.loads(world_file.read_text())
        del world["bucket.assets"]
        world_file.write_text(json.dumps(world))

        result = invoke("drift", "dev")

        assert result.exit_code == 1
        assert "bucket.assets — missing" in result.output


class TestForceUnlockCommand:
    def test_not_held(self, invoke):
        invoke("bootstrap")
        result = invoke("force-unlock", "dev", "--yes")
        assert result.exit_code == 0
        assert "was not held" in result.output

    def test_prompt_abort(self, project_file):
        result = CliRunner().invoke(
            cli,
            ["--config", str(project_file), "--mock", "force-unlock", "dev"],
            input="n\n",
        )
        assert result.exit_code == 1
        assert "Aborted" in result.output


# ── Sub-groups ──────────────────────────────────────────────────────


class TestWorkspaceCommands:
    def test_list_before_bootstrap(self, invoke):
        data = json.loads(invoke("workspace", "list", "--json").output)
        assert data == {"declared": ["dev", "test", "prod"], "workspaces": []}

    def test_new_then_list(self, invoke):
        result = invoke("workspace", "new", "test")
        assert result.exit_code == 0
        assert "State key:   chat-app/test/state.json" in result.output

        listing = invoke("workspace", "list")
        assert "✓ test" in listing.output
        assert "· dev (default)  (not created)" in listing.output

    def test_select(self, invoke):
        invoke("workspace", "new", "prod")
        data = json.loads(invoke("workspace", "select", "prod", "--json").output)
        assert data["name_prefix"] == "chat-app-prod"
        assert data["overlay"] == {"use_cdn": True, "memory": 512}

    def test_select_unknown(self, invoke):
        invoke("bootstrap")
        result = invoke("workspace", "select", "test")
        assert result.exit_code == 1
        assert "Unknown workspace 'test'" in result.output


class TestPipelineCommands:
    def test_dry_run(self, invoke, project_file):
        result = invoke("pipeline", "generate", "--dry-run")

        assert result.exit_code == 0
        assert ".github/workflows/deploy.yml" in result.output
        assert "stackdeploy destroy" in result.output
        assert not (project_file.parent / ".github").exists()

    def test_writes_files(self, invoke, project_file):
        data = json.loads(invoke("pipeline", "generate", "--json").output)

        assert data["written"] == {
            ".github/workflows/deploy.yml": True,
            ".github/workflows/destroy.yml": True,
        }
        assert (project_file.parent / ".github" / "workflows" / "deploy.yml").is_file()

    def test_keeps_existing_without_force(self, invoke):
        invoke("pipeline", "generate")
        again = json.loads(invoke("pipeline", "generate", "--json").output)
        assert set(again["written"].values()) == {False}

        forced = json.loads(invoke("pipeline", "generate", "--json", "--force").output)
        assert set(forced["written"].values()) == {True}
