"""Tests for beatflow.workflow.model module."""

import pytest

from beatflow.lib.validate import ValidationError
from beatflow.workflow.model import (
    WORKFLOW_STEPS,
    StepPhase,
    ResolvedStep,
    WorkflowDescriptor,
    builtin_descriptor,
    builtin_workflow_descriptors,
    closed_states,
    compat_status,
    derive_workflow_runtime_state,
    derive_workflow_state,
    load_workflow_descriptors,
    resolve_step,
    rollback_active_phase,
    with_workflow_state_label,
    workflow_catalog,
)


class TestResolveStep:
    """Tests for state name -> (step, phase) resolution."""

    @pytest.mark.parametrize("descriptor", builtin_workflow_descriptors(), ids=lambda d: d.id)
    def test_round_trip_for_every_step(self, descriptor):
        """Every step resolves as active, and its ready_for_ form as queued."""
        for step in descriptor.states:
            assert resolve_step(step, descriptor.states) == ResolvedStep(step, StepPhase.ACTIVE)
            assert resolve_step(f"ready_for_{step}", descriptor.states) == ResolvedStep(step, StepPhase.QUEUED)

    @pytest.mark.parametrize("name", ["", "shipped", "abandoned", "deferred", "bogus", "ready_for_", "ready_for_bogus"])
    def test_unrecognised_names_return_none(self, name):
        assert resolve_step(name) is None

    @pytest.mark.parametrize("value", [None, 42, ["implementation"]])
    def test_non_string_returns_none(self, value):
        assert resolve_step(value) is None

    def test_custom_steps(self):
        assert resolve_step("triage", ["triage"]) == ResolvedStep("triage", StepPhase.ACTIVE)
        assert resolve_step("implementation", ["triage"]) is None


class TestRollbackActivePhase:
    """Tests for active -> queued rollback."""

    def test_active_rolls_back(self):
        assert rollback_active_phase("implementation") == "ready_for_implementation"

    @pytest.mark.parametrize("name", ["ready_for_shipment", "shipped", "deferred", "bogus", ""])
    def test_other_states_unchanged(self, name):
        assert rollback_active_phase(name) == name

    @pytest.mark.parametrize("name", list(WORKFLOW_STEPS) + ["ready_for_planning", "shipped"])
    def test_idempotent(self, name):
        once = rollback_active_phase(name)
        assert rollback_active_phase(once) == once


class TestRuntimeState:
    """Tests for derive_workflow_runtime_state."""

    def test_queued_agent_step_is_claimable(self):
        runtime = derive_workflow_runtime_state(builtin_descriptor("autopilot"), "ready_for_implementation")
        assert runtime.is_agent_claimable
        assert not runtime.requires_human_action
        assert runtime.next_action_owner_kind == "agent"
        assert runtime.next_action_state == "implementation"

    def test_queued_human_step_requires_human(self):
        runtime = derive_workflow_runtime_state(builtin_descriptor("semiauto"), "ready_for_plan_review")
        assert not runtime.is_agent_claimable
        assert runtime.requires_human_action
        assert runtime.next_action_owner_kind == "human"

    @pytest.mark.parametrize("state", ["implementation", "shipped", "deferred", "nonsense", ""])
    def test_active_or_unresolved_is_inert(self, state):
        runtime = derive_workflow_runtime_state(builtin_descriptor("autopilot"), state)
        assert not runtime.is_agent_claimable
        assert not runtime.requires_human_action
        assert runtime.next_action_owner_kind == "none"


class TestBuiltinDescriptors:
    """Tests for the built-in workflow catalogue."""

    def test_six_profiles(self):
        ids = {d.id for d in builtin_workflow_descriptors()}
        assert ids == {
            "autopilot", "autopilot_with_pr", "semiauto",
            "autopilot_no_planning", "autopilot_with_pr_no_planning", "semiauto_no_planning",
        }

    def test_no_planning_profile_drops_planning_steps(self):
        descriptor = builtin_descriptor("autopilot_no_planning")
        assert "planning" not in descriptor.states
        assert "plan_review" not in descriptor.states
        assert descriptor.initial_state == "ready_for_implementation"

    def test_modes(self):
        assert builtin_descriptor("autopilot").mode == "granular_autonomous"
        assert builtin_descriptor("semiauto").mode == "coarse_human_gated"

    def test_queue_states(self):
        descriptor = builtin_descriptor("autopilot_no_planning")
        assert descriptor.queue_states() == [f"ready_for_{step}" for step in descriptor.states]
        assert "ready_for_implementation" in descriptor.queue_states()
        assert "implementation" not in descriptor.queue_states()

    def test_closed_states_include_configured_terminals(self):
        custom = WorkflowDescriptor(id="release", states=("build",), terminal_states=("released",))
        names = closed_states([builtin_descriptor("autopilot"), custom])
        assert {"closed", "shipped", "abandoned", "released"} <= names
        assert "build" not in names

    def test_unknown_profile_falls_back(self, caplog):
        assert builtin_descriptor("nope").id == "autopilot"
        assert "Unknown profile 'nope'" in caplog.text


class TestStateDerivation:
    """Tests for compat status mapping and state derivation from tracker data."""

    @pytest.mark.parametrize("state,status", [
        ("ready_for_implementation", "open"),
        ("implementation", "in_progress"),
        ("shipped", "closed"),
        ("abandoned", "closed"),
        ("deferred", "deferred"),
        (None, "open"),
    ])
    def test_compat_status(self, state, status):
        assert compat_status(state) == status

    def test_workflow_state_label_wins(self):
        labels = with_workflow_state_label(["stage:retry"], "implementation_review")
        assert derive_workflow_state("open", labels) == "implementation_review"

    def test_stage_labels_before_status(self):
        assert derive_workflow_state("in_progress", ["stage:verification"]) == "ready_for_implementation_review"
        assert derive_workflow_state("open", ["stage:retry"]) == "ready_for_implementation"

    def test_status_fallback(self):
        assert derive_workflow_state("closed", []) == "shipped"
        assert derive_workflow_state("open", []) == "ready_for_planning"
        assert derive_workflow_state(None, []) == "ready_for_planning"

    def test_with_workflow_state_label_replaces(self):
        labels = with_workflow_state_label(["x", "wf:state:planning"], "shipment")
        assert labels == ["x", "wf:state:shipment"]


class TestLoadWorkflowDescriptors:
    """Tests for loading custom workflows from YAML."""

    def test_loads_valid_file(self, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            "workflows:\n"
            "  - id: triage\n"
            "    states: [triage, fix]\n"
            "    owners: {triage: human}\n"
            "    transitions:\n"
            "      - {from: ready_for_triage, to: triage}\n"
        )
        descriptors = load_workflow_descriptors(path)
        assert len(descriptors) == 1
        triage = descriptors[0]
        assert triage.states == ("triage", "fix")
        assert triage.owner_for("triage") == "human"
        assert triage.owner_for("fix") == "agent"
        assert triage.initial_state == "ready_for_triage"
        assert workflow_catalog(descriptors)["triage"] is triage

    def test_rejects_schema_violation(self, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text("workflows:\n  - id: broken\n")
        with pytest.raises(ValidationError):
            load_workflow_descriptors(path)

    def test_rejects_bad_yaml(self, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text("workflows: [\n")
        with pytest.raises(ValidationError):
            load_workflow_descriptors(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow_descriptors(tmp_path / "nope.yaml")
