# ============================================================================
# TEARDOWN - Ordered, partial-failure tolerant step runner
# ============================================================================

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from .errors import NotFoundError, PpvnetError
from .lro import LroResult, LroStatus

log = logging.getLogger(__name__)

SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"


class StepSkipped(Exception):
    """Raised by a step action when there is nothing for it to do."""


@dataclass
class Step:
    name: str
    action: Callable[[], Any]
    description: str = ""
    resources: Sequence[str] = ()
    confirm_required: bool = False
    fatal_if_failed: bool = False


@dataclass
class StepRecord:
    name: str
    outcome: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {"step": self.name, "outcome": self.outcome, "detail": self.detail}


@dataclass
class Report:
    successes: List[StepRecord] = field(default_factory=list)
    errors: List[StepRecord] = field(default_factory=list)
    skipped: List[StepRecord] = field(default_factory=list)
    aborted_at: Optional[str] = None
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and not self.interrupted

    def record(self, record: StepRecord) -> None:
        {SUCCESS: self.successes, FAILED: self.errors, SKIPPED: self.skipped}[record.outcome].append(record)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "successes": [r.to_dict() for r in self.successes],
            "errors": [r.to_dict() for r in self.errors],
            "skipped": [r.to_dict() for r in self.skipped],
            "aborted_at": self.aborted_at,
            "interrupted": self.interrupted,
        }

    def render(self) -> str:
        lines = ["=" * 60, " TEARDOWN SUMMARY", "=" * 60]
        for r in self.successes:
            lines.append(f"  OK       {r.name}" + (f" - {r.detail}" if r.detail else ""))
        for r in self.skipped:
            lines.append(f"  SKIPPED  {r.name}" + (f" - {r.detail}" if r.detail else ""))
        for r in self.errors:
            lines.append(f"  FAILED   {r.name}" + (f" - {r.detail}" if r.detail else ""))
        if self.aborted_at:
            lines.append(f"  Sequence stopped at fatal step: {self.aborted_at}")
        if self.interrupted:
            lines.append("  Interrupted by operator; later steps did not run")
        lines.append("=" * 60)
        return "\n".join(lines)


# ============================================================================
# Confirmation gates
# ============================================================================

class AutoApproveGate:
    """Force mode: approves every step without reading stdin."""

    def confirm(self, step: Step) -> bool:
        log.info("Force mode: proceeding with '%s' without confirmation", step.name)
        return True


class PromptGate:
    """Asks the operator before each destructive step."""

    def __init__(self, input_func: Callable[[str], str] = input):
        self._input = input_func

    def confirm(self, step: Step) -> bool:
        log.warning("About to run: %s", step.name)
        if step.description:
            log.warning("  %s", step.description)
        for resource in step.resources:
            log.warning("  - %s", resource)
        choice = self._input("Continue? (y/n): ").lower().strip()
        while choice not in ("y", "n"):
            choice = self._input("Continue? (y/n): ").lower().strip()
        return choice == "y"


def gate_for(force: bool, input_func: Callable[[str], str] = input):
    return AutoApproveGate() if force else PromptGate(input_func)


# ============================================================================
# Sequencer
# ============================================================================

class TeardownSequencer:
    def __init__(self, gate, dry_run: bool = False):
        self.gate = gate
        self.dry_run = dry_run
        self.report = Report()

    def run(self, steps: Sequence[Step]) -> Report:
        self.report = Report()
        total = len(steps)
        for index, step in enumerate(steps, start=1):
            log.info("Step %d/%d: %s", index, total, step.name)

            if self.dry_run:
                detail = "dry run"
                if step.resources:
                    detail += ": would affect " + ", ".join(step.resources)
                self.report.record(StepRecord(step.name, SKIPPED, detail))
                continue

            try:
                if step.confirm_required and not self.gate.confirm(step):
                    log.info("Skipped '%s' at operator request", step.name)
                    self.report.record(StepRecord(step.name, SKIPPED, "declined by operator"))
                    continue
                record = self._execute(step)
            except KeyboardInterrupt:
                self.report.record(StepRecord(step.name, FAILED, "interrupted"))
                self.report.interrupted = True
                raise

            self.report.record(record)
            if record.outcome == FAILED:
                log.error("Step '%s' failed: %s", step.name, record.detail)
                if step.fatal_if_failed:
                    self.report.aborted_at = step.name
                    log.error("'%s' is fatal; stopping the sequence", step.name)
                    break
            else:
                log.info("Step '%s': %s%s", step.name, record.outcome,
                         f" ({record.detail})" if record.detail else "")
        return self.report

    def _execute(self, step: Step) -> StepRecord:
        try:
            result = step.action()
        except StepSkipped as e:
            return StepRecord(step.name, SKIPPED, str(e))
        except NotFoundError as e:
            return StepRecord(step.name, SUCCESS, f"already absent ({e.operation})")
        except PpvnetError as e:
            return StepRecord(step.name, FAILED, str(e))
        except Exception as e:
            log.exception("Step '%s' raised an unexpected error", step.name)
            return StepRecord(step.name, FAILED, f"{type(e).__name__}: {e}")

        if isinstance(result, LroResult):
            if result.status is LroStatus.DONE:
                return StepRecord(step.name, SUCCESS, result.detail)
            return StepRecord(step.name, FAILED, result.summary())
        if isinstance(result, str):
            return StepRecord(step.name, SUCCESS, result)
        return StepRecord(step.name, SUCCESS)
