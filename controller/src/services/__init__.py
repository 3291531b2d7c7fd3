from controller.src.services.artifact_store import (
    ArtifactStore,
    InMemoryArtifactStore,
    FilesystemArtifactStore,
    build_artifact_store,
)
from controller.src.services.coordinator import (
    RunCoordinator,
    InProcessRunGuard,
    RedisRunGuard,
    build_manifest,
    select_pipelines,
)
from controller.src.services.executor import (
    CancellationToken,
    ExecutionContext,
    StepExecutor,
)
from controller.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    parse_pipelines_file,
    validate_pipeline,
)
from controller.src.services.run_store import (
    RunRepository,
    InMemoryRunRepository,
    SqlRunRepository,
)
from controller.src.services.runners import (
    CommandInvocation,
    CommandOutcome,
    LocalProcessRunner,
    build_runner,
)
from controller.src.services.stage_runner import StageRunner
from controller.src.services.status_reporter import (
    StatusReporter,
    LoggingSink,
    MemorySink,
    RedisSink,
    GitHubStatusSink,
)

__all__ = [
    "ArtifactStore",
    "InMemoryArtifactStore",
    "FilesystemArtifactStore",
    "build_artifact_store",
    "RunCoordinator",
    "InProcessRunGuard",
    "RedisRunGuard",
    "build_manifest",
    "select_pipelines",
    "CancellationToken",
    "ExecutionContext",
    "StepExecutor",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "parse_pipelines_file",
    "validate_pipeline",
    "RunRepository",
    "InMemoryRunRepository",
    "SqlRunRepository",
    "CommandInvocation",
    "CommandOutcome",
    "LocalProcessRunner",
    "build_runner",
    "StageRunner",
    "StatusReporter",
    "LoggingSink",
    "MemorySink",
    "RedisSink",
    "GitHubStatusSink",
]
