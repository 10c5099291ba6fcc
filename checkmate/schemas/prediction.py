from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


UPSTREAM_STATUSES = {
    "starting": JobStatus.QUEUED,
    "processing": JobStatus.PROCESSING,
    "succeeded": JobStatus.SUCCEEDED,
    "failed": JobStatus.FAILED,
    "canceled": JobStatus.FAILED,
}

TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED)


class JobSpec(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    image: str = Field(..., description="Source image as a data URL or bare base64")
    prompt: str = Field(..., min_length=1, description="Editing instruction")
    negative_prompt: str = Field("", description="What the model should avoid")
    model_version: str = Field(..., description="Replicate model version id")


class PredictionJob(BaseModel):
    id: str
    # Unknown upstream values are kept verbatim so the poller can report them.
    status: Union[JobStatus, str]
    output: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_upstream(cls, payload: dict) -> "PredictionJob":
        if not isinstance(payload, dict):
            raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
        job_id = payload.get("id")
        if job_id is None or not str(job_id).strip():
            raise ValueError("prediction id is missing")
        raw_status = payload.get("status")
        status = UPSTREAM_STATUSES.get(str(raw_status).lower(), str(raw_status))
        output = payload.get("output")
        if isinstance(output, str):
            output = [output]
        elif not isinstance(output, list):
            output = []
        error = payload.get("error")
        return cls(
            id=str(job_id),
            status=status,
            output=[str(o) for o in output if o],
            error_message=str(error) if error else None,
        )
