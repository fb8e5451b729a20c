#!/usr/bin/env python3
"""
Run Reporter

Aggregates step outcomes for one command:
- Summary counts by status
- Human-readable text for the terminal
- Structured JSON document written after every run
"""

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Template

from ..state.store import utc_timestamp
from .sequencer import OutcomeStatus, StepOutcome

STATUS_MARKS = {
    OutcomeStatus.CREATED.value: "+",
    OutcomeStatus.SKIPPED_EXISTING.value: "=",
    OutcomeStatus.DELETED.value: "-",
    OutcomeStatus.FAILED.value: "✗",
}

REPORT_TEMPLATE = """
{{ "=" * 60 }}
{{ command }} ({{ mode }}) - project {{ project_id }} in {{ region }}
{{ "=" * 60 }}
{% for outcome in outcomes %}
  [{{ marks[outcome.status] }}] {{ "%-28s"|format(outcome.step_name) }} {{ outcome.status }}{% if outcome.detail %}: {{ outcome.detail }}{% endif %}

{% endfor %}
{{ "-" * 60 }}
Total: {{ summary.total }}  Created: {{ summary.created }}  Skipped: {{ summary.skipped }}  Deleted: {{ summary.deleted }}  Failed: {{ summary.failed }}
{% if error %}
Error: {{ error }}
{% endif %}
{% if failed and completed_steps and mode == "provision" %}
Completed steps (skipped on retry): {{ completed_steps|join(", ") }}
{% endif %}
"""


class Reporter:
    """Collects outcomes and renders them."""

    def __init__(
        self,
        command: str,
        mode: str,
        project_id: Optional[str] = None,
        region: Optional[str] = None,
    ):
        self.run_id = str(uuid.uuid4())
        self.command = command
        self.mode = mode
        self.project_id = project_id
        self.region = region
        self.started_at = utc_timestamp()
        self.finished_at: Optional[str] = None
        self.outcomes: List[StepOutcome] = []
        self.error: Optional[str] = None
        self.exit_code: Optional[int] = None

    def record(self, outcome: StepOutcome):
        self.outcomes.append(outcome)

    def fail(self, error: Exception):
        """Note an error that stopped the run outside any single step."""
        self.error = str(error)

    def finish(self, exit_code: int):
        self.finished_at = utc_timestamp()
        self.exit_code = exit_code

    def summarize(self) -> Dict[str, int]:
        def count(status: OutcomeStatus) -> int:
            return sum(1 for o in self.outcomes if o.status == status)

        return {
            "total": len(self.outcomes),
            "created": count(OutcomeStatus.CREATED),
            "skipped": count(OutcomeStatus.SKIPPED_EXISTING),
            "failed": count(OutcomeStatus.FAILED),
            "deleted": count(OutcomeStatus.DELETED),
        }

    def completed_steps(self) -> List[str]:
        return [o.step_name for o in self.outcomes if o.status != OutcomeStatus.FAILED]

    def render(self) -> str:
        summary = self.summarize()
        template = Template(REPORT_TEMPLATE, trim_blocks=True, lstrip_blocks=True)
        return template.render(
            command=self.command,
            mode=self.mode,
            project_id=self.project_id or "-",
            region=self.region or "-",
            outcomes=[o.to_dict() for o in self.outcomes],
            marks=STATUS_MARKS,
            summary=summary,
            error=self.error,
            failed=summary["failed"] > 0 or self.error is not None,
            completed_steps=self.completed_steps(),
        ).strip() + "\n"

    def to_document(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "command": self.command,
            "mode": self.mode,
            "project_id": self.project_id,
            "region": self.region,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "summary": self.summarize(),
            "completed_steps": self.completed_steps(),
            "error": self.error,
            "exit_code": self.exit_code,
        }

    def write(self, path: str) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(self.to_document(), f, indent=2)
            f.write("\n")
        return target
