"""Tests for plan parsing and validation."""

from pathlib import Path

import pytest

from devflow.config.settings import WorkflowConfig
from devflow.enums import FailurePolicy
from devflow.exceptions import CycleError, PlanValidationError
from devflow.models.loader import load_plan_document
from devflow.models.plan import Plan, parse_plan


def _step(step_id: str, depends_on: list[str] | None = None, **extra) -> dict:
    return {"id": step_id, "skill": "git", "action": "create-branch", "dependsOn": depends_on or [], **extra}


class TestParsePlan:
    """Tests for parse_plan()."""

    def test_parse_valid_plan(self, sample_plan_document):
        """Test a valid document becomes an immutable Plan."""
        plan = parse_plan(sample_plan_document)

        assert isinstance(plan, Plan)
        assert plan.id == "p1"
        assert plan.step_ids == ["s1", "s2"]
        assert plan.get_step("s2").depends_on == ("s1",)
        assert plan.get_step("s1").params == {"name": "feature/x"}

    def test_plan_is_frozen(self, sample_plan_document):
        """Test the Plan value cannot be mutated."""
        plan = parse_plan(sample_plan_document)

        with pytest.raises(Exception):
            plan.name = "changed"

    def test_unknown_fields_ignored(self, sample_plan_document):
        """Test unknown top-level and step fields are ignored."""
        sample_plan_document["owner"] = "team-a"
        sample_plan_document["steps"][0]["color"] = "blue"

        plan = parse_plan(sample_plan_document)

        assert plan.id == "p1"

    def test_optional_step_fields(self):
        """Test parallelSafe, timeout, skip and description are read."""
        plan = parse_plan(
            {
                "id": "p",
                "steps": [_step("a", parallelSafe=True, timeout=2.5, skip=True, description="Create it")],
            }
        )

        step = plan.get_step("a")
        assert step.parallel_safe is True
        assert step.timeout == 2.5
        assert step.skip is True
        assert step.description == "Create it"

    def test_duplicate_dependencies_collapsed(self):
        """Test repeated dependsOn entries are kept once, in order."""
        plan = parse_plan({"id": "p", "steps": [_step("a"), _step("b"), _step("c", ["b", "a", "b"])]})

        assert plan.get_step("c").depends_on == ("b", "a")

    def test_rollback_as_single_item_list(self):
        """Test a one-element rollback list is accepted."""
        plan = parse_plan(
            {"id": "p", "steps": [_step("a", rollback=[{"skill": "git", "action": "delete-branch"}])]}
        )

        assert plan.get_step("a").rollback.capability_key == "git/delete-branch"

    def test_get_step_unknown_raises(self, sample_plan_document):
        plan = parse_plan(sample_plan_document)

        with pytest.raises(KeyError):
            plan.get_step("missing")

    def test_to_document_parses_back(self, sample_plan_document):
        """Test a serialized plan parses to an equal plan."""
        plan = parse_plan(sample_plan_document)

        assert parse_plan(plan.to_document()) == plan


class TestPlanValidationErrors:
    """Tests for malformed plan documents."""

    def test_not_a_mapping(self):
        with pytest.raises(PlanValidationError):
            parse_plan(["not", "a", "plan"])

    def test_missing_steps(self):
        """Test a plan must have at least one step."""
        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "p", "steps": []})

        assert "steps" in exc_info.value.fields

    def test_missing_required_step_field(self):
        """Test the offending field path is reported."""
        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "p", "steps": [{"id": "a", "skill": "git"}]})

        assert "steps[0].action" in exc_info.value.fields

    def test_invalid_plan_id(self):
        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "../etc", "steps": [_step("a")]})

        assert "id" in exc_info.value.fields

    def test_duplicate_step_ids(self):
        """Test duplicate step ids are rejected with both positions."""
        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "p", "steps": [_step("a"), _step("a")]})

        assert exc_info.value.fields == ["steps[0].id", "steps[1].id"]
        assert "duplicate step id 'a'" in exc_info.value.message

    def test_unknown_dependency(self):
        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "p", "steps": [_step("a", ["ghost"])]})

        assert exc_info.value.fields == ["steps[0].dependsOn"]
        assert "ghost" in exc_info.value.message

    def test_self_dependency(self):
        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "p", "steps": [_step("a", ["a"])]})

        assert "depends on itself" in exc_info.value.message

    def test_depends_on_string_rejected(self):
        with pytest.raises(PlanValidationError):
            parse_plan({"id": "p", "steps": [_step("a"), {**_step("b"), "dependsOn": "a"}]})

    def test_more_than_one_rollback_action(self):
        """Test a step carries at most one rollback action."""
        rollback = [{"skill": "git", "action": "delete-branch"}, {"skill": "git", "action": "prune"}]

        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "p", "steps": [_step("a", rollback=rollback)]})

        assert "steps[0].rollback" in exc_info.value.fields

    def test_params_must_be_mapping(self):
        with pytest.raises(PlanValidationError):
            parse_plan({"id": "p", "steps": [_step("a", params=["x"])]})

    def test_params_must_be_json_serializable(self):
        with pytest.raises(PlanValidationError) as exc_info:
            parse_plan({"id": "p", "steps": [_step("a", params={"when": object()})]})

        assert exc_info.value.fields == ["steps[0].params"]

    def test_non_positive_timeout(self):
        with pytest.raises(PlanValidationError):
            parse_plan({"id": "p", "steps": [_step("a", timeout=0)]})

    def test_mutual_dependency_is_cycle(self):
        """Test {A->B, B->A} fails with a CycleError naming both steps."""
        with pytest.raises(CycleError) as exc_info:
            parse_plan({"id": "p", "steps": [_step("A", ["B"]), _step("B", ["A"])]})

        error = exc_info.value
        assert error.unresolved == ["A", "B"]
        assert "Mutual dependency" in error.message
        assert isinstance(error, PlanValidationError)


class TestPlanOptions:
    """Tests for per-plan options and configuration defaults."""

    def test_defaults_filled_from_workflow_config(self):
        plan = parse_plan({"id": "p", "steps": [_step("a")]})
        workflow = WorkflowConfig(failure_policy="continue", max_concurrency=4, skipped_satisfies_dependencies=True)

        resolved = plan.with_defaults(workflow)

        assert resolved.options.failure_policy == FailurePolicy.CONTINUE
        assert resolved.options.max_concurrency == 4
        assert resolved.options.skipped_satisfies_dependencies is True

    def test_plan_options_win_over_config(self):
        plan = parse_plan(
            {"id": "p", "steps": [_step("a")], "options": {"failurePolicy": "abort", "maxConcurrency": 2}}
        )

        resolved = plan.with_defaults(WorkflowConfig(failure_policy="continue", max_concurrency=8))

        assert resolved.options.failure_policy == FailurePolicy.ABORT
        assert resolved.options.max_concurrency == 2

    def test_concurrency_requires_parallel_opt_in(self):
        """Test maxConcurrency has no effect unless the plan is parallel."""
        sequential = parse_plan({"id": "p", "steps": [_step("a")], "options": {"maxConcurrency": 4}})
        parallel = parse_plan(
            {"id": "p", "steps": [_step("a")], "options": {"maxConcurrency": 4, "parallel": True}}
        )

        assert sequential.options.effective_max_concurrency == 1
        assert parallel.options.effective_max_concurrency == 4

    def test_default_failure_policy_is_abort(self):
        plan = parse_plan({"id": "p", "steps": [_step("a")]})

        assert plan.options.effective_failure_policy == FailurePolicy.ABORT


class TestLoadPlanDocument:
    """Tests for reading plan files."""

    def test_load_yaml(self, tmp_path: Path):
        plan_file = tmp_path / "plan.yaml"
        plan_file.write_text(
            "id: p1\n"
            "steps:\n"
            "  - id: s1\n"
            "    skill: git\n"
            "    action: create-branch\n"
            "    params: {name: feature/x}\n"
        )

        document = load_plan_document(plan_file)

        assert document["id"] == "p1"
        assert parse_plan(document).get_step("s1").params == {"name": "feature/x"}

    def test_load_json(self, tmp_path: Path):
        plan_file = tmp_path / "plan.json"
        plan_file.write_text('{"id": "p1", "steps": [{"id": "s1", "skill": "git", "action": "x"}]}')

        assert load_plan_document(plan_file)["steps"][0]["id"] == "s1"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(PlanValidationError, match="not found"):
            load_plan_document(tmp_path / "nope.yaml")

    def test_invalid_syntax(self, tmp_path: Path):
        plan_file = tmp_path / "plan.json"
        plan_file.write_text("{not json")

        with pytest.raises(PlanValidationError, match="Invalid syntax"):
            load_plan_document(plan_file)

    def test_not_a_mapping(self, tmp_path: Path):
        plan_file = tmp_path / "plan.yaml"
        plan_file.write_text("- just\n- a list\n")

        with pytest.raises(PlanValidationError, match="mapping"):
            load_plan_document(plan_file)
