from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PipelineStage = Literal["fetching", "normalizing", "deduplicating", "scoring", "persisting", "done"]
RunStatus = Literal["completed", "partial", "cancelled", "failed"]


class PipelineRunResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    fetched: int = 0
    normalized: int = 0
    unique: int = 0
    qualified: int = 0
    inserted: int = 0
    duplicates: int = 0
    disqualified: int = 0
    conflicts: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    status: RunStatus = "completed"
    stage: PipelineStage = "done"
    started_at: datetime
    finished_at: datetime
