"""Tests for the provisioning sequencer"""

import json
from unittest.mock import patch

import pytest

from endpoint_provisioner.errors import DependencyCycle, MissingDependency
from endpoint_provisioner.reconciler.reporter import Reporter
from endpoint_provisioner.reconciler.sequencer import Mode, OutcomeStatus, Sequencer, plan_order
from endpoint_provisioner.state.store import StateStore


def statuses(result):
    return [(o.step_name, o.status) for o in result.outcomes]


class TestPlanOrder:
    """Test suite for dependency ordering"""

    def test_keeps_declaration_order_when_independent(self, fake_step, state):
        """Test that unrelated steps run in the order they were declared"""
        steps = [fake_step("c"), fake_step("a"), fake_step("b")]
        assert [s.name for s in plan_order(steps, state)] == ["c", "a", "b"]

    def test_producer_moves_before_consumer(self, fake_step, state):
        """Test that a consumer declared first still runs after its producer"""
        steps = [fake_step("b", depends_on=["a"]), fake_step("a"), fake_step("c")]
        assert [s.name for s in plan_order(steps, state)] == ["a", "b", "c"]

    def test_dependency_satisfied_by_state(self, fake_step, state):
        """Test that a role recorded by an earlier run satisfies a dependency"""
        state.put("vpc", "vpc-123")
        steps = [fake_step("endpoint", depends_on=["vpc"])]
        assert plan_order(steps, state) == steps

    def test_missing_dependency(self, fake_step, state):
        """Test that an unsatisfiable dependency names the role and step"""
        steps = [fake_step("endpoint", depends_on=["vpc"])]
        with pytest.raises(MissingDependency) as excinfo:
            plan_order(steps, state)
        assert excinfo.value.role == "vpc"
        assert excinfo.value.step == "endpoint"

    def test_cycle(self, fake_step, state):
        """Test that a dependency cycle is reported with the steps involved"""
        steps = [fake_step("a", depends_on=["b"]), fake_step("b", depends_on=["a"]), fake_step("c")]
        with pytest.raises(DependencyCycle) as excinfo:
            plan_order(steps, state)
        assert excinfo.value.steps == ["a", "b"]

    def test_duplicate_producer_rejected(self, fake_step, state):
        """Test that two steps may not produce the same role"""
        with pytest.raises(ValueError):
            plan_order([fake_step("a", produces=["x"]), fake_step("b", produces=["x"])], state)

    def test_teardown_order_ignores_unknown_dependencies(self, fake_step, state):
        """Test that teardown ordering does not require dependencies to be recorded"""
        steps = [fake_step("a", depends_on=["elsewhere"])]
        assert plan_order(steps, state, validate=False) == steps


class TestProvision:
    """Test suite for the forward pass"""

    def test_two_runs_are_idempotent(self, fake_step, state):
        """Test that the first run creates and the second skips, leaving state unchanged"""
        a = fake_step("A")
        b = fake_step("B", depends_on=["A"])
        sequencer = Sequencer(state)

        first = sequencer.provision([a, b])
        assert statuses(first) == [("A", OutcomeStatus.CREATED), ("B", OutcomeStatus.CREATED)]
        assert state.snapshot() == {"A": "id-A", "B": "id-B"}

        with open(state.path, encoding="utf-8") as f:
            saved = f.read()

        second = sequencer.provision([a, b])
        assert statuses(second) == [
            ("A", OutcomeStatus.SKIPPED_EXISTING),
            ("B", OutcomeStatus.SKIPPED_EXISTING),
        ]
        assert state.snapshot() == {"A": "id-A", "B": "id-B"}
        with open(state.path, encoding="utf-8") as f:
            assert f.read() == saved

    def test_create_never_called_when_exists(self, fake_step, state):
        """Test that an existing resource is not created again"""
        a = fake_step("A", present=True)
        Sequencer(state).provision([a])
        assert ("create", "A") not in a.calls

    def test_failure_aborts_without_rollback(self, fake_step, state):
        """Test that A is kept, B fails and C is never attempted"""
        calls = []
        a = fake_step("A", calls=calls)
        b = fake_step("B", depends_on=["A"], fail_on={"create"}, calls=calls)
        c = fake_step("C", depends_on=["B"], calls=calls)

        result = Sequencer(state).provision([a, b, c])

        assert statuses(result) == [("A", OutcomeStatus.CREATED), ("B", OutcomeStatus.FAILED)]
        assert not any(name == "C" for _, name in calls)
        assert state.snapshot() == {"A": "id-A"}
        assert result.exit_code == 2
        assert result.completed_steps == ["A"]
        assert "InvalidParameter" in result.failures[0].detail

    def test_state_saved_after_each_step(self, fake_step, state, settings):
        """Test that a crash after the first step leaves it recorded on disk"""
        a = fake_step("A")
        b = fake_step("B", fail_on={"create"})
        Sequencer(state).provision([a, b])

        reloaded = StateStore(settings.state_path)
        assert reloaded.load() == {"A": "id-A"}

    def test_resume_matches_uninterrupted_run(self, fake_step, tmp_path):
        """Test that resuming after an interruption yields the same state as one clean run"""
        clean = StateStore(str(tmp_path / "clean.json"))
        Sequencer(clean).provision([fake_step("A"), fake_step("B", depends_on=["A"])])

        resumed = StateStore(str(tmp_path / "resumed.json"))
        Sequencer(resumed).provision([fake_step("A"), fake_step("B", depends_on=["A"], fail_on={"create"})])
        resumed.load()
        a = fake_step("A", present=True)
        Sequencer(resumed).provision([a, fake_step("B", depends_on=["A"])])

        assert resumed.snapshot() == clean.snapshot()

    def test_missing_dependency_before_any_provider_call(self, fake_step, state):
        """Test that validation fails before any step is touched"""
        calls = []
        steps = [fake_step("A", calls=calls), fake_step("B", depends_on=["nowhere"], calls=calls)]
        with pytest.raises(MissingDependency):
            Sequencer(state).provision(steps)
        assert calls == []

    def test_adopted_ids_are_recorded(self, fake_step, state):
        """Test that a pre-existing resource found by exists is adopted into state"""
        a = fake_step("A", present=True)
        a.adopted = {"A": "id-found"}
        result = Sequencer(state).provision([a])
        assert state.get("A") == "id-found"
        assert "adopted" in result.outcomes[0].detail

    def test_missing_identifier_is_a_failure(self, fake_step, state):
        """Test that create returning no id for a produced role fails the step"""
        a = fake_step("A", produces=["A", "A-extra"])
        a.create = lambda st: {"A": "id-A"}
        result = Sequencer(state).provision([a])
        assert result.outcomes[0].status == OutcomeStatus.FAILED
        assert "A-extra" in result.outcomes[0].detail

    def test_undeclared_role_is_a_failure(self, fake_step, state):
        """Test that create returning a role it does not produce fails the step and stops the run"""
        a = fake_step("A")
        a.create = lambda st: {"A": "id-A", "other": "id-other"}
        result = Sequencer(state).provision([a, fake_step("B")])

        assert statuses(result) == [("A", OutcomeStatus.FAILED)]
        assert "undeclared roles" in result.outcomes[0].detail
        assert result.exit_code == 2

    def test_outcomes_reach_reporter_and_progress(self, fake_step, state):
        """Test that every outcome is recorded and reported as it happens"""
        reporter = Reporter("setup-network", Mode.PROVISION.value)
        seen = []
        Sequencer(state, reporter, progress=seen.append).provision([fake_step("A")])
        assert [o.step_name for o in reporter.outcomes] == ["A"]
        assert [o.step_name for o in seen] == ["A"]


class TestTeardown:
    """Test suite for the reverse pass"""

    def test_reverse_order(self, fake_step, state):
        """Test that dependents are deleted before their dependencies"""
        calls = []
        steps = [fake_step("A", calls=calls), fake_step("B", depends_on=["A"], calls=calls)]
        Sequencer(state).provision(steps)
        calls.clear()

        result = Sequencer(state).teardown(steps)

        assert [c for c in calls if c[0] == "delete"] == [("delete", "B"), ("delete", "A")]
        assert statuses(result) == [("B", OutcomeStatus.DELETED), ("A", OutcomeStatus.DELETED)]
        assert len(state) == 0
        assert result.exit_code == 0

    def test_failure_does_not_stop_teardown(self, fake_step, state):
        """Test that A is still deleted when B's delete fails"""
        a = fake_step("A")
        b = fake_step("B", depends_on=["A"], fail_on={"delete"})
        Sequencer(state).provision([a, b])

        result = Sequencer(state).teardown([a, b])

        assert result.count(OutcomeStatus.DELETED) == 1
        assert result.count(OutcomeStatus.FAILED) == 1
        assert [o.step_name for o in result.failures] == ["B"]
        assert state.snapshot() == {"B": "id-B"}
        assert result.exit_code == 1

    def test_all_deletes_failing_is_hard_failure(self, fake_step, state):
        """Test that a teardown where nothing could be deleted exits 2"""
        a = fake_step("A", fail_on={"delete"})
        Sequencer(state).provision([a])
        assert Sequencer(state).teardown([a]).exit_code == 2

    def test_absent_role_is_noop(self, fake_step, state):
        """Test that a step whose role is not recorded is not deleted and not reported"""
        calls = []
        result = Sequencer(state).teardown([fake_step("A", calls=calls)])
        assert calls == []
        assert result.outcomes == []
        assert result.success

    def test_state_saved_after_each_delete(self, fake_step, state, settings):
        """Test that the document on disk shrinks as deletes succeed"""
        a = fake_step("A")
        b = fake_step("B", depends_on=["A"])
        Sequencer(state).provision([a, b])
        a.fail_on = {"delete"}

        Sequencer(state).teardown([a, b])

        with open(settings.state_path, encoding="utf-8") as f:
            assert list(json.load(f)["resources"]) == ["A"]

    def test_state_write_failure_does_not_stop_teardown(self, fake_step, state):
        """Test that a failed state save is recorded and the remaining deletes still run"""
        calls = []
        a = fake_step("A", calls=calls)
        b = fake_step("B", depends_on=["A"], calls=calls)
        Sequencer(state).provision([a, b])
        calls.clear()

        with patch.object(StateStore, "save", side_effect=[OSError("disk full"), None]):
            result = Sequencer(state).teardown([a, b])

        assert [c for c in calls if c[0] == "delete"] == [("delete", "B"), ("delete", "A")]
        assert statuses(result) == [("B", OutcomeStatus.FAILED), ("A", OutcomeStatus.DELETED)]
        assert "disk full" in result.outcomes[0].detail
        assert result.exit_code == 1

    def test_unexpected_delete_error_does_not_stop_teardown(self, fake_step, state):
        """Test that an error outside the provider family is reported as a failed delete"""
        a = fake_step("A")
        b = fake_step("B", depends_on=["A"])
        Sequencer(state).provision([a, b])

        def broken(st):
            raise ValueError("bad response")

        b.delete = broken
        result = Sequencer(state).teardown([a, b])

        assert statuses(result) == [("B", OutcomeStatus.FAILED), ("A", OutcomeStatus.DELETED)]
        assert state.snapshot() == {"B": "id-B"}
