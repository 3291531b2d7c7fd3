"""
Pipewright error taxonomy.
"""


class PipewrightError(Exception):
    """Base class for engine errors."""
    pass


class StepFailed(PipewrightError):
    """Raised when a step exits with an unexpected code."""

    def __init__(self, step_name: str, exit_code: int, expected: int = 0):
        self.step_name = step_name
        self.exit_code = exit_code
        self.expected = expected
        super().__init__(
            f"Step '{step_name}' exited with {exit_code} (expected {expected})"
        )


class StepTimedOut(PipewrightError):
    """Raised when a step exceeds its configured timeout."""

    def __init__(self, step_name: str, timeout: float):
        self.step_name = step_name
        self.timeout = timeout
        super().__init__(f"Step '{step_name}' timed out after {timeout}s")


class DuplicateArtifact(PipewrightError):
    """Raised on a second write to the same (run_id, name) key."""

    def __init__(self, run_id: str, name: str):
        self.run_id = run_id
        self.name = name
        super().__init__(f"Artifact '{name}' already exists for run {run_id}")


class ArtifactNotFound(PipewrightError):
    """Raised when an artifact does not exist."""

    def __init__(self, run_id: str, name: str):
        self.run_id = run_id
        self.name = name
        super().__init__(f"Artifact '{name}' not found for run {run_id}")


class TriggerRejected(PipewrightError):
    """Raised when no pipeline accepts a trigger event."""
    pass


class DuplicateRun(TriggerRejected):
    """Raised when a deduplicated pipeline already has an active run for the key."""

    def __init__(self, pipeline: str, key: str):
        self.pipeline = pipeline
        self.key = key
        super().__init__(f"Pipeline '{pipeline}' already has a running run for '{key}'")


class PipelineMisconfigured(PipewrightError):
    """Raised when a pipeline definition is invalid."""
    pass


class RunNotFound(PipewrightError):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")
