from api.src.models.run import (
    ManualTriggerRequest,
    QueuedRun,
    TriggerResponse,
    PipelineSummary,
)

__all__ = [
    "ManualTriggerRequest",
    "QueuedRun",
    "TriggerResponse",
    "PipelineSummary",
]
