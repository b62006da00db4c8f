"""
Explicit outcomes for pipeline steps.

Non-critical steps (analytics, calendar, notifications) report a StepResult
instead of raising; the pipeline decides from the result whether a failure
is soft or terminal.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from loguru import logger

from clinicflow.constants import ClassificationPath, Urgency
from clinicflow.exceptions import ClassifierDegraded


class StepOutcome(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepResult:
    name: str
    outcome: StepOutcome
    detail: str = ""
    value: Any = None

    @classmethod
    def ok(cls, name: str, value: Any = None, detail: str = "") -> "StepResult":
        return cls(name, StepOutcome.OK, detail, value)

    @classmethod
    def skipped(cls, name: str, reason: str) -> "StepResult":
        return cls(name, StepOutcome.SKIPPED, reason)

    @classmethod
    def failed(cls, name: str, error: BaseException) -> "StepResult":
        return cls(name, StepOutcome.FAILED, f"{type(error).__name__}: {error}")

    @property
    def succeeded(self) -> bool:
        return self.outcome is StepOutcome.OK


async def run_soft_step(name: str, action: Callable[[], Awaitable[Any]], log=logger) -> StepResult:
    """Run a step whose failure must not abort the pipeline."""
    try:
        value = await action()
    except Exception as e:
        log.warning(f"Step '{name}' failed (continuing): {e}")
        return StepResult.failed(name, e)
    return StepResult.ok(name, value)


@dataclass
class _StepLog:
    steps: List[StepResult] = field(default_factory=list)

    def add(self, result: StepResult) -> StepResult:
        self.steps.append(result)
        return result

    def step(self, name: str) -> Optional[StepResult]:
        for result in self.steps:
            if result.name == name:
                return result
        return None

    @property
    def soft_errors(self) -> List[str]:
        return [f"{s.name}: {s.detail}" for s in self.steps if s.outcome is StepOutcome.FAILED]


@dataclass
class IntakeResult(_StepLog):
    form_id: str = ""
    urgency: Optional[Urgency] = None
    processed_by: Optional[ClassificationPath] = None
    duplicate: bool = False
    degradation: Optional[ClassifierDegraded] = None

    @property
    def degraded(self) -> bool:
        return self.processed_by is not None and self.processed_by.is_degraded

    @property
    def warnings(self) -> List[str]:
        if self.degradation is None:
            return self.soft_errors
        return self.soft_errors + [f"triage: {self.degradation.message}"]

    def to_response(self) -> dict:
        return {
            "success": True,
            "form_id": self.form_id,
            "urgency_level": self.urgency.value if self.urgency else None,
            "processed_by": self.processed_by.value if self.processed_by else None,
            "degraded": self.degraded,
            "duplicate": self.duplicate,
            "warnings": self.warnings,
        }


@dataclass
class BookingResult(_StepLog):
    event: str = ""
    external_event_id: str = ""
    action: str = ""

    def to_response(self) -> dict:
        return {
            "success": True,
            "event": self.event,
            "external_event_id": self.external_event_id,
            "action": self.action,
            "warnings": self.soft_errors,
        }
