from controller.src.models.step import (
    Status,
    TriggerEvent,
    TriggerFilter,
    StepConfig,
    StageConfig,
    PipelineConfig,
    StepResult,
    StageResult,
    RunRecord,
    Artifact,
    ArtifactRef,
    StatusEvent,
    RunManifest,
    PipelineJob,
    utcnow,
)

__all__ = [
    "Status",
    "TriggerEvent",
    "TriggerFilter",
    "StepConfig",
    "StageConfig",
    "PipelineConfig",
    "StepResult",
    "StageResult",
    "RunRecord",
    "Artifact",
    "ArtifactRef",
    "StatusEvent",
    "RunManifest",
    "PipelineJob",
    "utcnow",
]
