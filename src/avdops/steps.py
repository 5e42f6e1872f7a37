"""Step results and transition reports.

Each maintenance/restore step returns a StepResult. The orchestrator appends
it to a TransitionReport and stops at the first fatal result, so the
warning-versus-fatal policy lives in the steps themselves instead of being
scattered through exception handlers.
"""

import logging
from dataclasses import dataclass, field

from avdops.console import log_success

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """Outcome of one transition step.

    ok=True, fatal=False: step succeeded (or was a no-op)
    ok=False, fatal=False: step failed; logged as a warning, flow continues
    ok=False, fatal=True: step failed; the transition aborts
    skipped=True: step was intentionally not attempted
    """

    step: str
    ok: bool
    message: str
    fatal: bool = False
    skipped: bool = False
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def success(cls, step: str, message: str, warnings: list[str] | None = None) -> "StepResult":
        return cls(step=step, ok=True, message=message, warnings=list(warnings or []))

    @classmethod
    def warning(cls, step: str, message: str) -> "StepResult":
        return cls(step=step, ok=False, message=message)

    @classmethod
    def failure(cls, step: str, message: str) -> "StepResult":
        return cls(step=step, ok=False, message=message, fatal=True)

    @classmethod
    def skip(cls, step: str, message: str) -> "StepResult":
        return cls(step=step, ok=True, message=message, skipped=True)

    def __repr__(self) -> str:
        if self.skipped:
            status = "SKIPPED"
        elif self.ok:
            status = "OK"
        elif self.fatal:
            status = "FATAL"
        else:
            status = "WARN"
        return f"[{status}] {self.step}: {self.message}"


@dataclass
class TransitionReport:
    """Aggregated step results for one maintenance or restore invocation."""

    mode: str
    vm_name: str
    results: list[StepResult] = field(default_factory=list)

    def record(self, result: StepResult) -> StepResult:
        """Append a step result and log it at the matching level."""
        self.results.append(result)
        for text in result.warnings:
            logger.warning(f"  {result.step}: {text}")

        if result.fatal:
            logger.error(result.message)
        elif not result.ok:
            logger.warning(result.message)
        elif result.skipped:
            logger.info(result.message)
        else:
            log_success(logger, result.message)
        return result

    @property
    def failed(self) -> bool:
        return any(r.fatal for r in self.results)

    @property
    def fatal_step(self) -> StepResult | None:
        for r in self.results:
            if r.fatal:
                return r
        return None

    @property
    def warnings(self) -> list[str]:
        """Every non-fatal problem surfaced during the run."""
        collected: list[str] = []
        for r in self.results:
            collected.extend(r.warnings)
            if not r.ok and not r.fatal:
                collected.append(r.message)
        return collected

    def step(self, name: str) -> StepResult | None:
        """Most recent result for a named step."""
        for r in reversed(self.results):
            if r.step == name:
                return r
        return None

    def attempted(self, name: str) -> bool:
        """True when the named step ran (not skipped, not absent)."""
        r = self.step(name)
        return r is not None and not r.skipped


__all__ = ["StepResult", "TransitionReport"]
