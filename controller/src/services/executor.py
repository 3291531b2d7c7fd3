"""
Step executor - runs a single step and records its output.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Callable

from controller.src.errors import StepFailed, StepTimedOut
from controller.src.models.step import StepConfig, StepResult, Status, utcnow
from controller.src.services.artifact_store import ArtifactStore
from controller.src.services.runners import (
    CommandInvocation,
    CommandOutcome,
    CommandRunner,
    LocalProcessRunner,
)
from controller.src.services.workspace import is_within

logger = logging.getLogger(__name__)

class CancellationToken:
    """
    Cooperative cancellation flag, checked between steps and stages.

    An optional poll callback lets an external source (e.g. a Redis set) request
    cancellation without holding a reference to the token.
    """

    def __init__(self, poll: Optional[Callable[[], bool]] = None):
        self._event = threading.Event()
        self._poll = poll

    def cancel(self):
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._poll is not None and self._poll():
            self._event.set()
            return True
        return False

@dataclass
class ExecutionContext:
    run_id: str
    stage_name: str
    workspace: str
    env: Dict[str, str] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    # Called before each step, e.g. to keep a dedup claim alive
    heartbeat: Optional[Callable[[], None]] = None

def step_log_name(stage_name: str, step_name: str, stream: str = "stdout") -> str:
    """Artifact name holding a step's captured output stream."""
    if stream == "stderr":
        return f"{stage_name}/logs/{step_name}.stderr.log"
    return f"{stage_name}/logs/{step_name}.log"

def output_artifact_name(stage_name: str, rel_path: str) -> str:
    """Artifact name for a declared output file, relative to the workspace."""
    return f"{stage_name}/outputs/{rel_path}"

class StepExecutor:
    def __init__(self, store: ArtifactStore, runner: Optional[CommandRunner] = None):
        self.store = store
        self.runner = runner or LocalProcessRunner()

    def execute(self, step: StepConfig, context: ExecutionContext) -> StepResult:
        """
        Run a step to completion or timeout.
        Always returns a StepResult with a terminal status.
        """
        started_at = utcnow()
        error = self._check_paths(step, context)

        if error:
            logger.error(f"Step {step.name} in {context.stage_name}: {error}")
            outcome = CommandOutcome(stderr=error.encode())
            status = Status.FAILED
        else:
            outcome, status, error = self._invoke(step, context)
            if status == Status.SUCCEEDED:
                error = self._check_outputs(step, context)
                if error:
                    status = Status.FAILED
                    logger.error(f"Step {step.name} in {context.stage_name}: {error}")

        stdout_ref = self.store.put(
            context.run_id, step_log_name(context.stage_name, step.name), outcome.stdout
        )
        stderr_ref = self.store.put(
            context.run_id,
            step_log_name(context.stage_name, step.name, "stderr"),
            outcome.stderr,
        )

        return StepResult(
            step_name=step.name,
            status=status,
            exit_code=outcome.exit_code,
            stdout_ref=stdout_ref,
            stderr_ref=stderr_ref,
            error=error,
            required=not step.allow_failure,
            expected_exit_code=step.expected_exit_code,
            timeout=step.timeout,
            started_at=started_at,
            finished_at=utcnow(),
        )

    def _check_paths(self, step: StepConfig, context: ExecutionContext) -> Optional[str]:
        if step.working_dir and not is_within(
            context.workspace, os.path.join(context.workspace, step.working_dir)
        ):
            return f"Working directory escapes the workspace: {step.working_dir}"

        missing = []
        for path in step.inputs:
            full_path = os.path.join(context.workspace, path)
            if not os.path.exists(full_path):
                missing.append(path)
            elif not is_within(context.workspace, full_path):
                return f"Input escapes the workspace: {path}"
        if missing:
            return f"Missing declared inputs: {', '.join(missing)}"
        return None

    def _check_outputs(self, step: StepConfig, context: ExecutionContext) -> Optional[str]:
        absent = []
        for path in step.outputs:
            full_path = os.path.join(context.workspace, path)
            if not os.path.exists(full_path):
                absent.append(path)
            elif not is_within(context.workspace, full_path):
                return f"Output escapes the workspace: {path}"
        if absent:
            return f"Missing declared outputs: {', '.join(absent)}"
        return None

    def _invoke(self, step: StepConfig, context: ExecutionContext):
        working_dir = context.workspace
        if step.working_dir:
            working_dir = os.path.join(context.workspace, step.working_dir)

        env = dict(context.env)
        env.update(step.env)
        env["PIPEWRIGHT_STAGE"] = context.stage_name
        env["PIPEWRIGHT_STEP"] = step.name

        invocation = CommandInvocation(
            command=step.command,
            args=step.args,
            working_dir=working_dir,
            env=env,
            timeout=step.timeout,
            image=step.image,
            labels={
                "run-id": context.run_id,
                "stage": context.stage_name,
                "step": step.name,
            },
        )

        try:
            outcome = self.runner.run(invocation)
        except Exception as e:
            logger.exception(f"Step {step.name} in {context.stage_name} could not be started")
            return CommandOutcome(stderr=str(e).encode()), Status.FAILED, str(e)

        if outcome.timed_out:
            return outcome, Status.TIMED_OUT, str(StepTimedOut(step.name, step.timeout))

        if outcome.exit_code != step.expected_exit_code:
            error = StepFailed(step.name, outcome.exit_code, step.expected_exit_code)
            return outcome, Status.FAILED, str(error)

        return outcome, Status.SUCCEEDED, None
