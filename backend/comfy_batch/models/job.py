from enum import Enum
from typing import List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field as PydanticField, field_validator
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_project_id(value: str) -> str:
    """Project ids name a directory under the generated images root."""
    value = (value or "").strip()
    if not value:
        raise ValueError("projectId is required and must be a non-empty string")
    if value in (".", "..") or "/" in value or "\\" in value or "\x00" in value:
        raise ValueError("projectId must not contain path separators")
    return value


class ImageJobBase(SQLModel):
    prompt: str
    project_id: str = Field(index=True)


class ImageJob(ImageJobBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    image_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class ImageJobsCreate(BaseModel):
    """Request body for a batch of prompts submitted together."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = PydanticField(alias="projectId")
    prompts: List[str]

    @field_validator("project_id")
    @classmethod
    def check_project_id(cls, v: str) -> str:
        return validate_project_id(v)

    @field_validator("prompts")
    @classmethod
    def check_prompts(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("Prompts array is required")
        cleaned = [p.strip() for p in v]
        if any(not p for p in cleaned):
            raise ValueError("Prompts must be non-empty strings")
        return cleaned


class ImageJobsCreated(BaseModel):
    message: str
    jobsCreated: int
    projectId: str
    jobIds: List[int]


class ImageJobRead(SQLModel):
    id: int
    prompt: str
    project_id: str
    status: JobStatus
    image_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
