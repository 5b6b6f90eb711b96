"""Tests for the devflow CLI."""

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from devflow.main import cli

PLUGIN_SOURCE = textwrap.dedent(
    """
    from devflow.exceptions import CapabilityError


    async def hello(params, context):
        return {"greeting": f"hello {params.get('name', 'world')}"}


    async def fail(params, context):
        raise CapabilityError("conflict", "Demo failure")


    def register(registry):
        registry.register("demo", "hello", hello, description="Say hello")
        registry.register("demo", "fail", fail)
    """
)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def plugin(tmp_path: Path, monkeypatch) -> str:
    """Importable plugin module registering the ``demo`` skill."""
    plugin_dir = tmp_path / "plugins"
    plugin_dir.mkdir()
    (plugin_dir / "devflow_demo_plugin.py").write_text(PLUGIN_SOURCE)
    monkeypatch.syspath_prepend(str(plugin_dir))
    return "devflow_demo_plugin"


def _write_plan(tmp_path: Path, plan_id: str = "p1", second_action: str = "noop") -> Path:
    plan_file = tmp_path / f"{plan_id}.yaml"
    plan_file.write_text(
        f"id: {plan_id}\n"
        "name: CLI plan\n"
        "steps:\n"
        "  - id: s1\n"
        "    skill: core\n"
        "    action: echo\n"
        "    params: {message: hi}\n"
        "    rollback: {skill: core, action: noop}\n"
        "  - id: s2\n"
        "    skill: core\n"
        f"    action: {second_action}\n"
        "    dependsOn: [s1]\n"
    )
    return plan_file


class TestCli:
    """Tests for the command group."""

    def _invoke(self, runner, state_dir, *args, plugins=()):
        base = ["--state-dir", str(state_dir), "--log-level", "CRITICAL"]
        for module in plugins:
            base += ["--plugin", module]
        return runner.invoke(cli, [*base, *args])

    def test_full_lifecycle(self, runner, state_dir, tmp_path):
        """Test plan, approve, validate, execute and status."""
        plan_result = self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path)))
        assert plan_result.exit_code == 0, plan_result.output
        summary = json.loads(plan_result.stdout)
        assert summary["plan_id"] == "p1"
        assert summary["groups"] == [["s1"], ["s2"]]
        assert summary["steps"][1]["risks"] == ["irreversible"]

        assert self._invoke(runner, state_dir, "approve", "p1").exit_code == 0
        validate_result = self._invoke(runner, state_dir, "validate", "p1")
        assert json.loads(validate_result.stdout) == {"plan_id": "p1", "status": "validated"}

        execute_result = self._invoke(runner, state_dir, "execute", "p1")
        assert execute_result.exit_code == 0, execute_result.output
        report = json.loads(execute_result.stdout)
        assert report["status"] == "completed"
        assert report["outcome"] == "success"
        assert report["steps"][0]["output"] == {"message": "hi"}

        status_result = self._invoke(runner, state_dir, "status", "p1")
        assert json.loads(status_result.stdout)["status"] == "completed"

    def test_execute_requires_approval(self, runner, state_dir, tmp_path):
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path)))

        result = self._invoke(runner, state_dir, "execute", "p1")

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "requires approval" in result.output

    def test_execute_with_approve_flag(self, runner, state_dir, tmp_path):
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path)))

        result = self._invoke(runner, state_dir, "execute", "p1", "--approve")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "completed"

    def test_rolled_back_run_exits_nonzero(self, runner, state_dir, tmp_path, plugin):
        plan_file = tmp_path / "fails.yaml"
        plan_file.write_text(
            "id: fails\n"
            "steps:\n"
            "  - {id: a, skill: demo, action: hello, rollback: {skill: core, action: noop}}\n"
            "  - {id: b, skill: demo, action: fail, dependsOn: [a]}\n"
        )
        self._invoke(runner, state_dir, "plan", str(plan_file), plugins=[plugin])

        result = self._invoke(runner, state_dir, "execute", "fails", "--approve", plugins=[plugin])

        assert result.exit_code == 1
        report = json.loads(result.stdout)
        assert report["status"] == "rolled_back"
        assert report["rollback"]["compensated"] == ["a"]

    def test_validation_failure(self, runner, state_dir, tmp_path):
        """Test an unknown capability is reported without running anything."""
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path, second_action="teleport")))

        result = self._invoke(runner, state_dir, "execute", "p1", "--approve")

        assert result.exit_code == 1
        assert "Unknown capability: core/teleport" in result.output

    def test_invalid_plan_file(self, runner, state_dir, tmp_path):
        plan_file = tmp_path / "cycle.yaml"
        plan_file.write_text(
            "id: cyc\n"
            "steps:\n"
            "  - {id: a, skill: core, action: noop, dependsOn: [b]}\n"
            "  - {id: b, skill: core, action: noop, dependsOn: [a]}\n"
        )

        result = self._invoke(runner, state_dir, "plan", str(plan_file))

        assert result.exit_code == 1
        assert "Mutual dependency: a <-> b" in result.output

    def test_missing_plan_file(self, runner, state_dir, tmp_path):
        result = self._invoke(runner, state_dir, "plan", str(tmp_path / "nope.yaml"))

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_abort_before_execution(self, runner, state_dir, tmp_path):
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path)))

        result = self._invoke(runner, state_dir, "abort", "p1", "--reason", "Not needed")

        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert report["status"] == "aborted"
        assert report["reason"] == "Not needed"

    def test_resume_without_interrupted_run(self, runner, state_dir, tmp_path):
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path)))

        result = self._invoke(runner, state_dir, "resume", "p1")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_list_plans(self, runner, state_dir, tmp_path):
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path, "p1")))
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path, "p2")))
        self._invoke(runner, state_dir, "abort", "p2")

        all_plans = json.loads(self._invoke(runner, state_dir, "list-plans").stdout)
        active = json.loads(self._invoke(runner, state_dir, "list-plans", "--active").stdout)

        assert [p["plan_id"] for p in all_plans] == ["p1", "p2"]
        assert [p["plan_id"] for p in active] == ["p1"]

    def test_list_resumable_plans(self, runner, state_dir, tmp_path):
        """Test only runs interrupted mid-execution are listed as resumable."""
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path, "p1")))
        self._invoke(runner, state_dir, "plan", str(_write_plan(tmp_path, "p2")))
        state_file = state_dir / "p2.json"
        state = json.loads(state_file.read_text())
        state["status"] = "executing"
        state_file.write_text(json.dumps(state))

        result = self._invoke(runner, state_dir, "list-plans", "--resumable")

        assert result.exit_code == 0, result.output
        assert [(p["plan_id"], p["status"]) for p in json.loads(result.stdout)] == [("p2", "executing")]

    def test_status_unknown_plan(self, runner, state_dir):
        result = self._invoke(runner, state_dir, "status", "ghost")

        assert result.exit_code == 1
        assert "Plan 'ghost' not found" in result.output


class TestCapabilities:
    """Tests for capability listing and plugins."""

    def test_builtin_capabilities(self, runner):
        result = runner.invoke(cli, ["--log-level", "CRITICAL", "capabilities"])

        keys = [c["capability"] for c in json.loads(result.stdout)]
        assert keys == ["core/echo", "core/noop", "core/wait"]

    def test_plugin_capabilities(self, runner, plugin):
        result = runner.invoke(cli, ["--log-level", "CRITICAL", "--plugin", plugin, "capabilities"])

        capabilities = {c["capability"]: c for c in json.loads(result.stdout)}
        assert capabilities["demo/hello"]["description"] == "Say hello"

    def test_missing_plugin(self, runner):
        result = runner.invoke(cli, ["--log-level", "CRITICAL", "--plugin", "no_such_devflow_plugin", "capabilities"])

        assert result.exit_code == 1
        assert "Cannot import plugin" in result.output


class TestConfigOption:
    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "capabilities"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_config_file_sets_state_dir(self, runner, tmp_path):
        state_dir = tmp_path / "configured-state"
        config = tmp_path / "devflow.yaml"
        config.write_text(f"workflow:\n  state_directory: {state_dir}\nlogging:\n  level: CRITICAL\n")

        result = runner.invoke(cli, ["--config", str(config), "plan", str(_write_plan(tmp_path))])

        assert result.exit_code == 0, result.output
        assert (state_dir / "p1.json").exists()
