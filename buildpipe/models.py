# buildpipe/models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from buildpipe.errors import SerializationError, SubmissionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (Phase.SUCCEEDED, Phase.FAILED)


# Queued -> Running -> {Succeeded | Failed}; rank only ever increases.
PHASE_RANK: Dict[Phase, int] = {
    Phase.QUEUED: 0,
    Phase.RUNNING: 1,
    Phase.SUCCEEDED: 2,
    Phase.FAILED: 2,
}


class BuildRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    repository_url: str
    branch: Optional[str] = None
    commit_hash: Optional[str] = None
    submitter_id: str = ""
    submitted_at: datetime = Field(default_factory=utcnow)

    @field_validator("repository_url")
    @classmethod
    def _url_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("repository_url must not be empty")
        return v

    @field_validator("branch", "commit_hash")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class BuildRecord(BaseModel):
    id: str
    repository_url: str
    branch: Optional[str] = None
    commit_hash: Optional[str] = None
    submitter_id: str = ""
    submitted_at: datetime
    phase: Phase = Phase.QUEUED
    status_message: str = ""
    artifact_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None  # milliseconds

    @classmethod
    def from_request(cls, req: BuildRequest, now: Optional[datetime] = None) -> "BuildRecord":
        now = now or utcnow()
        return cls(
            **req.model_dump(),
            phase=Phase.QUEUED,
            status_message="Build queued for processing",
            created_at=now,
            updated_at=now,
        )


class LogEntry(BaseModel):
    build_id: str
    line: str
    emitted_at: datetime
    seq: Optional[int] = None


# ── Progress events (wire) ─────────────────────────────────────────────────────

class StatusChanged(BaseModel):
    kind: Literal["status"] = "status"
    build_id: str
    phase: Phase
    message: str = ""
    at: datetime = Field(default_factory=utcnow)


class LogAppended(BaseModel):
    kind: Literal["log"] = "log"
    build_id: str
    line: str
    seq: Optional[int] = None
    at: datetime = Field(default_factory=utcnow)


class Completed(BaseModel):
    kind: Literal["completion"] = "completion"
    build_id: str
    outcome: Phase
    artifact_reference: Optional[str] = None
    duration: int = 0  # milliseconds
    message: str = ""
    at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_outcome(self) -> "Completed":
        if not self.outcome.terminal:
            raise ValueError(f"completion outcome must be terminal, got {self.outcome.value}")
        if self.outcome is Phase.SUCCEEDED and not self.artifact_reference:
            raise ValueError("a succeeded completion requires an artifact_reference")
        if self.outcome is Phase.FAILED:
            self.artifact_reference = None
        return self


ProgressEvent = Union[StatusChanged, LogAppended, Completed]

EVENT_TYPES = {
    "status": StatusChanged,
    "log": LogAppended,
    "completion": Completed,
}


def parse_event(payload: dict, kind: Optional[str] = None) -> ProgressEvent:
    """Decode a progress event. The payload's own ``kind`` wins over the hint."""
    if not isinstance(payload, dict):
        raise SerializationError(f"event payload must be an object, got {type(payload).__name__}")
    kind = payload.get("kind") or kind
    model = EVENT_TYPES.get(kind or "")
    if model is None:
        raise SerializationError(f"unknown event kind: {kind!r}")
    try:
        return model.model_validate({**payload, "kind": kind})
    except ValidationError as e:
        raise SerializationError(f"invalid {kind} event: {e.errors(include_url=False)}") from e


def parse_request(payload: dict) -> BuildRequest:
    if not isinstance(payload, dict):
        raise SerializationError(f"build request must be an object, got {type(payload).__name__}")
    try:
        return BuildRequest.model_validate(payload)
    except ValidationError as e:
        raise SerializationError(f"invalid build request: {e.errors(include_url=False)}") from e


def new_request(repository_url: str, submitter_id: str = "",
                branch: Optional[str] = None, commit_hash: Optional[str] = None) -> BuildRequest:
    """Validate a client submission; raises SubmissionError so it never enters the pipeline."""
    try:
        return BuildRequest(repository_url=repository_url, submitter_id=submitter_id,
                            branch=branch, commit_hash=commit_hash)
    except ValidationError as e:
        raise SubmissionError(str(e)) from e
