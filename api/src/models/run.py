from pydantic import BaseModel
from typing import Optional, List, Dict

class ManualTriggerRequest(BaseModel):
    branch: str = "main"
    commit_sha: str
    event_type: str = "manual"
    actor: str = ""
    repository: Optional[str] = None
    clone_url: Optional[str] = None

class QueuedRun(BaseModel):
    run_id: str
    pipeline: str

class TriggerResponse(BaseModel):
    status: str
    runs: List[QueuedRun] = []
    reason: Optional[str] = None

class PipelineSummary(BaseModel):
    name: str
    stages: List[str]
    trigger: Dict[str, List[str]]
    deduplicate: bool
