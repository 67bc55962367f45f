"""Per-file outcomes and the run report."""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field

from .state import TaskState


class TaskOutcome(BaseModel):
    """Result of running one task through the pool."""

    number: int = Field(description="Progress number claimed when the task started.")
    input_path: Path
    output_path: Path
    state: TaskState
    error: Optional[str] = None
    elapsed_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.COMPLETED


class RunReport(BaseModel):
    """Aggregated outcomes of a batch run."""

    outcomes: List[TaskOutcome] = Field(default_factory=list)

    @computed_field
    @property
    def total(self) -> int:
        return len(self.outcomes)

    @computed_field
    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @computed_field
    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def failures(self) -> List[TaskOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    def write(self, path: Path) -> None:
        """Save the report as JSON, ordered by progress number."""
        ordered = RunReport(outcomes=sorted(self.outcomes, key=lambda o: o.number))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(ordered.model_dump_json(indent=2) + "\n", encoding="utf-8")
