"""
Stage runner - executes a stage's steps strictly in declared order.
"""

import logging
from dataclasses import replace
from typing import List

from controller.src.models.step import StageConfig, StageResult, StepResult, Status, utcnow
from controller.src.services.executor import ExecutionContext, StepExecutor
from controller.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)

class StageRunner:
    def __init__(self, executor: StepExecutor, reporter: StatusReporter):
        self.executor = executor
        self.reporter = reporter

    def run(self, stage: StageConfig, context: ExecutionContext) -> StageResult:
        """
        Run every step of a stage in order.

        Stops at the first failed required step unless the stage sets
        continue_on_failure. Cancellation is checked before each step;
        a step that has started always runs to completion.
        """
        context = replace(context, stage_name=stage.name, env={**context.env, **stage.env})
        started_at = utcnow()
        results: List[StepResult] = []
        interrupted = False

        for step in stage.steps:
            if context.cancel_token.is_cancelled():
                logger.info(f"Run {context.run_id} cancelled before step {stage.name}/{step.name}")
                interrupted = True
                break

            if context.heartbeat is not None:
                context.heartbeat()

            self.reporter.emit(context.run_id, "step", f"{stage.name}/{step.name}", Status.PENDING, Status.RUNNING)
            result = self.executor.execute(step, context)
            results.append(result)
            self.reporter.emit(context.run_id, "step", f"{stage.name}/{step.name}", Status.RUNNING, result.status)

            if result.failed:
                if not result.required:
                    logger.warning(f"Step {stage.name}/{step.name} failed but is allowed to fail")
                    continue
                logger.error(f"Step {stage.name}/{step.name} failed: {result.error}")
                if not stage.continue_on_failure:
                    break
            else:
                logger.info(f"Step {stage.name}/{step.name} succeeded")

        if any(r.failed and r.required for r in results):
            status = Status.FAILED
        elif interrupted:
            status = Status.CANCELLED
        else:
            status = Status.SUCCEEDED

        return StageResult(
            stage_name=stage.name,
            status=status,
            step_results=results,
            continue_on_failure=stage.continue_on_failure,
            started_at=started_at,
            finished_at=utcnow(),
        )
