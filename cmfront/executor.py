"""Renders plans for dry runs and runs them step by step, stopping at the first failure."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Tuple
import logging
import shlex

from core.command_runner import CommandRunner, format_command

from .errors import ConfirmationDeclined
from .plan import Plan, Step

logger = logging.getLogger(__name__)

INTERRUPTED_EXIT_CODE = 130
LAUNCH_FAILURE_EXIT_CODE = 1


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class StepOutcome:
    step: Step
    status: StepStatus
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    interrupted: bool = False


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    plan: Plan
    outcomes: Tuple[StepOutcome, ...]
    failed_index: int | None = None
    interrupted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.failed_index is None

    @property
    def attempted(self) -> Tuple[StepOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.status is not StepStatus.SKIPPED)

    @property
    def exit_code(self) -> int:
        if self.failed_index is None:
            return 0
        if self.interrupted:
            return INTERRUPTED_EXIT_CODE
        failed = self.outcomes[self.failed_index]
        if failed.returncode is not None and failed.returncode < 0:
            return 128 - failed.returncode
        if failed.returncode:
            return failed.returncode
        return LAUNCH_FAILURE_EXIT_CODE


def render_step(step: Step, *, workspace: Path | None = None) -> str:
    """Shell form of ``step``: env assignments, quoted argv, then the label as a comment."""

    parts = [f"{shlex.quote(name)}={shlex.quote(value)}" for name, value in step.env]
    parts.append(format_command(step.argv))
    comment = step.label
    if workspace is not None and step.cwd != workspace:
        comment = f"{comment} (cwd={step.cwd})"
    return f"{' '.join(parts)}  # {comment}"


class Executor:
    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    def render(self, plan: Plan) -> List[str]:
        return [render_step(step, workspace=plan.workspace) for step in plan.steps]

    def run(
        self,
        plan: Plan,
        *,
        confirm: Callable[[Plan], bool] | None = None,
        on_step: Callable[[StepOutcome], None] | None = None,
    ) -> ExecutionResult:
        if plan.unsafe and confirm is not None and not confirm(plan):
            raise ConfirmationDeclined(f"{plan.request.operation} was not confirmed")

        outcomes: List[StepOutcome] = []
        failed_index: int | None = None
        interrupted = False

        for index, step in enumerate(plan.steps):
            if failed_index is not None:
                outcome = StepOutcome(step=step, status=StepStatus.SKIPPED)
                logger.debug("Skipping %s", step.label)
            else:
                outcome = self._run_step(step, plan)
                if outcome.status is StepStatus.FAILED:
                    failed_index = index
                    interrupted = outcome.interrupted
            outcomes.append(outcome)
            if on_step is not None:
                on_step(outcome)

        return ExecutionResult(
            plan=plan,
            outcomes=tuple(outcomes),
            failed_index=failed_index,
            interrupted=interrupted,
        )

    def _run_step(self, step: Step, plan: Plan) -> StepOutcome:
        logger.info("%s", render_step(step, workspace=plan.workspace))
        logger.debug("%s: %s", step.label, StepStatus.RUNNING.value)
        try:
            result = self._runner.run(
                step.argv,
                cwd=step.cwd,
                env=step.environment or None,
                check=False,
            )
        except OSError as exc:
            logger.error("%s could not be started: %s", step.label, exc)
            return StepOutcome(step=step, status=StepStatus.FAILED, error=str(exc))
        except KeyboardInterrupt:
            logger.warning("%s interrupted", step.label)
            return StepOutcome(step=step, status=StepStatus.FAILED, error="interrupted", interrupted=True)

        status = StepStatus.SUCCEEDED if result.returncode == 0 else StepStatus.FAILED
        if status is StepStatus.FAILED:
            logger.error("%s failed with exit code %s", step.label, result.returncode)
        return StepOutcome(
            step=step,
            status=status,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )


__all__ = [
    "ExecutionResult",
    "Executor",
    "StepOutcome",
    "StepStatus",
    "render_step",
]
