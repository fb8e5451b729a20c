#!/usr/bin/env python3
"""
Provisioning Sequencer

Walks a plan of resource steps against the state store.

Implements:
- Stable dependency ordering (ties broken by declaration order)
- Dependency validation before any provider call
- Forward provisioning that skips what already exists and stops at the first failure
- Best-effort reverse teardown that collects every failure
"""

import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import DependencyCycle, MissingDependency, ProviderError, ProvisionerError
from ..metrics import METRICS

logger = logging.getLogger(__name__)


class Mode(Enum):
    PROVISION = "provision"
    TEARDOWN = "teardown"


class OutcomeStatus(Enum):
    CREATED = "created"
    SKIPPED_EXISTING = "skipped_existing"
    FAILED = "failed"
    DELETED = "deleted"


@dataclass
class StepOutcome:
    """What happened to one step in one run."""

    step_name: str
    status: OutcomeStatus
    detail: str = ""
    duration_ms: float = 0
    error: Optional[Exception] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, object]:
        return {
            "step_name": self.step_name,
            "status": self.status.value,
            "detail": self.detail,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class RunResult:
    """Outcomes of one provisioning or teardown pass, in execution order."""

    mode: Mode
    outcomes: List[StepOutcome] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def failures(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    @property
    def completed_steps(self) -> List[str]:
        return [o.step_name for o in self.outcomes if o.status != OutcomeStatus.FAILED]

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        """0 = everything succeeded, 1 = partial teardown, 2 = hard failure."""
        if self.success:
            return 0
        if self.mode == Mode.TEARDOWN and self.count(OutcomeStatus.DELETED):
            return 1
        return 2


def plan_order(steps: Sequence, state, validate: bool = True) -> List:
    """
    Order steps so every producer precedes its consumers.

    Among steps that are ready at the same time, declaration order wins, so the
    same plan always runs in the same order. With validate=True every
    dependency must be produced inside the plan or already be recorded in state.
    """
    producers: Dict[str, int] = {}
    for index, step in enumerate(steps):
        for role in step.produces:
            if role in producers:
                raise ValueError(
                    f"Role '{role}' is produced by both '{steps[producers[role]].name}' and '{step.name}'"
                )
            producers[role] = index

    requires: List[set] = []
    for step in steps:
        edges = set()
        for role in sorted(step.depends_on):
            if role in producers:
                edges.add(producers[role])
            elif validate and not state.has(role):
                raise MissingDependency(role, step.name)
        requires.append(edges)

    ordered: List[int] = []
    placed = set()
    while len(ordered) < len(steps):
        ready = next(
            (i for i in range(len(steps)) if i not in placed and requires[i] <= placed),
            None,
        )
        if ready is None:
            raise DependencyCycle([steps[i].name for i in range(len(steps)) if i not in placed])
        ordered.append(ready)
        placed.add(ready)

    return [steps[i] for i in ordered]


class Sequencer:
    """
    Applies a plan of steps to the state store.

    The store is saved after every successful step so an interrupted run
    resumes exactly where it stopped.
    """

    def __init__(
        self,
        state,
        reporter=None,
        progress: Optional[Callable[[StepOutcome], None]] = None,
    ):
        self.state = state
        self.reporter = reporter
        self.progress = progress

    def provision(self, steps: Sequence) -> RunResult:
        ordered = plan_order(steps, self.state)
        result = RunResult(mode=Mode.PROVISION)

        for step in ordered:
            started = time.monotonic()
            try:
                if step.exists(self.state):
                    adopted = step.adopt(self.state) or {}
                    self._write(step, adopted)
                    detail = "already exists"
                    if adopted:
                        detail += f", adopted {self._describe(adopted)}"
                    outcome = StepOutcome(step.name, OutcomeStatus.SKIPPED_EXISTING, detail)
                else:
                    produced = step.create(self.state) or {}
                    missing = sorted(set(step.produces) - set(produced))
                    if missing:
                        raise ProviderError(step.name, f"no identifier returned for {', '.join(missing)}")
                    self._write(step, produced)
                    outcome = StepOutcome(step.name, OutcomeStatus.CREATED, self._describe(produced))
            except ProvisionerError as e:
                outcome = StepOutcome(step.name, OutcomeStatus.FAILED, str(e), error=e)
                logger.error(f"Step {step.name} failed: {e}")
            except (OSError, ValueError) as e:
                outcome = StepOutcome(step.name, OutcomeStatus.FAILED, f"{type(e).__name__}: {e}", error=e)
                logger.exception(f"Step {step.name} failed recording its result")

            self._finish(result, outcome, started)
            if outcome.status == OutcomeStatus.FAILED:
                remaining = ordered[ordered.index(step) + 1:]
                if remaining:
                    logger.warning(
                        f"Aborting; not attempted: {', '.join(s.name for s in remaining)}"
                    )
                break

        return result

    def teardown(self, steps: Sequence) -> RunResult:
        ordered = plan_order(steps, self.state, validate=False)
        result = RunResult(mode=Mode.TEARDOWN)

        for step in reversed(ordered):
            present = [role for role in step.produces if self.state.has(role)]
            if not present:
                logger.debug(f"Step {step.name}: nothing recorded, skipping delete")
                continue

            started = time.monotonic()
            try:
                step.delete(self.state)
                for role in present:
                    self.state.remove(role)
                self.state.save()
                outcome = StepOutcome(step.name, OutcomeStatus.DELETED, ", ".join(present))
            except ProvisionerError as e:
                outcome = StepOutcome(step.name, OutcomeStatus.FAILED, str(e), error=e)
                logger.error(f"Delete of {step.name} failed: {e}")
            except Exception as e:
                # Local failures, such as the state file write, must not stop the remaining deletes
                outcome = StepOutcome(step.name, OutcomeStatus.FAILED, f"{type(e).__name__}: {e}", error=e)
                logger.exception(f"Delete of {step.name} failed unexpectedly")

            self._finish(result, outcome, started)

        return result

    def _write(self, step, produced: Dict[str, str]):
        unexpected = sorted(set(produced) - set(step.produces))
        if unexpected:
            raise ValueError(f"Step '{step.name}' returned undeclared roles: {unexpected}")
        if not produced:
            return
        for role, provider_id in produced.items():
            self.state.put(role, provider_id)
        self.state.save()

    def _finish(self, result: RunResult, outcome: StepOutcome, started: float):
        elapsed = time.monotonic() - started
        outcome.duration_ms = elapsed * 1000
        result.outcomes.append(outcome)

        METRICS["step_outcomes"].labels(mode=result.mode.value, status=outcome.status.value).inc()
        METRICS["step_duration"].labels(mode=result.mode.value).observe(elapsed)
        METRICS["resources_tracked"].set(len(self.state))

        logger.info(f"{result.mode.value}: {outcome.step_name} -> {outcome.status.value} {outcome.detail}")
        if self.reporter is not None:
            self.reporter.record(outcome)
        if self.progress is not None:
            self.progress(outcome)

    @staticmethod
    def _describe(produced: Dict[str, str]) -> str:
        return ", ".join(f"{role}={provider_id}" for role, provider_id in produced.items())
