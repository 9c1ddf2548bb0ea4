"""
Data models for the TDD cycle metrics pipeline.

This module provides:
- The development-cycle Phase enumeration
- CommitEvent, the in-memory view of one commit
- CycleState, the per-branch state persisted between commits
- CycleObservation, the outcome of one cycle state update
- LogRecord, the line format of the append-only cycle log
"""

import json
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN = "unknown"
SCHEMA_VERSION = 1


class Phase(str, Enum):
    """Development-cycle phases."""
    RED = "RED"
    GREEN = "GREEN"
    REFACTOR = "REFACTOR"
    TIDY = "TIDY"
    OTHER = "OTHER"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CommitEvent(BaseModel):
    """One commit as seen by the pipeline."""

    model_config = ConfigDict(frozen=True)

    commit_hash: str = Field(..., min_length=1, description="Git commit hash")
    branch: str = Field(default=UNKNOWN, description="Branch name")
    message: str = Field(default="", description="Raw commit message")
    phase: Optional[Phase] = Field(default=None, description="Classified phase")
    files_changed: int = Field(default=0, ge=0, description="Files touched")
    lines_added: int = Field(default=0, ge=0, description="Lines added")
    lines_removed: int = Field(default=0, ge=0, description="Lines removed")
    changed_paths: List[str] = Field(default_factory=list, description="Paths touched")
    author: str = Field(default=UNKNOWN, description="Commit author")
    repository: str = Field(default=UNKNOWN, description="Repository directory name")
    occurred_at: datetime = Field(default_factory=utc_now, description="Author time")
    cycle_duration: Optional[timedelta] = Field(
        default=None, description="RED to GREEN duration, only on cycle-closing GREEN events"
    )

    @field_validator("branch", "author", "repository")
    @classmethod
    def blank_is_unknown(cls, v):
        if v is None or not str(v).strip():
            return UNKNOWN
        return str(v).strip()

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, v):
        return ensure_utc(v)

    @property
    def subject(self) -> str:
        """First line of the commit message."""
        lines = self.message.strip().splitlines()
        return lines[0] if lines else ""

    def with_phase(self, phase: Phase) -> "CommitEvent":
        """Return a copy with the phase set; the phase cannot change once computed."""
        if self.phase is not None and self.phase != phase:
            raise ValueError(f"Phase already set to {self.phase.value}")
        return self.model_copy(update={"phase": phase})

    def with_cycle_duration(self, duration: Optional[timedelta]) -> "CommitEvent":
        if duration is not None and self.phase != Phase.GREEN:
            raise ValueError("Only GREEN events carry a cycle duration")
        return self.model_copy(update={"cycle_duration": duration})


class CycleState(BaseModel):
    """Open cycle for one branch."""

    branch: str = Field(..., min_length=1, description="Branch name")
    pending_red_at: Optional[datetime] = Field(default=None, description="Time of the open RED")
    pending_red_hash: Optional[str] = Field(default=None, description="Commit of the open RED")
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("pending_red_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v):
        return ensure_utc(v) if v is not None else v

    @property
    def is_open(self) -> bool:
        return self.pending_red_at is not None


class CycleObservation(BaseModel):
    """Outcome of feeding one event to the cycle state store."""

    duration: Optional[timedelta] = None
    cycle_started_at: Optional[datetime] = None
    abandoned_red_at: Optional[datetime] = None
    orphan: bool = False
    duplicate: bool = False
    skipped: bool = False

    @classmethod
    def skipped_observation(cls) -> "CycleObservation":
        return cls(skipped=True)


class LogRecord(BaseModel):
    """One line of the append-only cycle log."""

    schema_version: int = Field(default=SCHEMA_VERSION)
    logged_at: datetime = Field(default_factory=utc_now)
    commit_hash: str
    branch: str
    repository: str = UNKNOWN
    author: str = UNKNOWN
    message: str = ""
    phase: Phase
    files_changed: int = Field(default=0, ge=0)
    lines_added: int = Field(default=0, ge=0)
    lines_removed: int = Field(default=0, ge=0)
    occurred_at: datetime
    cycle_duration_seconds: Optional[float] = Field(default=None, ge=0)
    cycle_started_at: Optional[datetime] = None
    abandoned_cycle: bool = False
    orphan_green: bool = False
    duplicate: bool = False
    cycle_state: str = Field(default="ok", pattern="^(ok|skipped)$")

    @classmethod
    def from_event(
        cls,
        event: CommitEvent,
        observation: Optional[CycleObservation] = None,
    ) -> "LogRecord":
        """Serialize a classified CommitEvent together with its cycle outcome."""
        if event.phase is None:
            raise ValueError("Cannot log an unclassified commit event")
        observation = observation or CycleObservation()
        duration = event.cycle_duration or observation.duration
        return cls(
            commit_hash=event.commit_hash,
            branch=event.branch,
            repository=event.repository,
            author=event.author,
            message=event.subject,
            phase=event.phase,
            files_changed=event.files_changed,
            lines_added=event.lines_added,
            lines_removed=event.lines_removed,
            occurred_at=event.occurred_at,
            cycle_duration_seconds=duration.total_seconds() if duration is not None else None,
            cycle_started_at=observation.cycle_started_at,
            abandoned_cycle=observation.abandoned_red_at is not None,
            orphan_green=observation.orphan,
            duplicate=observation.duplicate,
            cycle_state="skipped" if observation.skipped else "ok",
        )

    @property
    def cycle_duration(self) -> Optional[timedelta]:
        if self.cycle_duration_seconds is None:
            return None
        return timedelta(seconds=self.cycle_duration_seconds)

    def to_line(self) -> str:
        """Serialize as a single JSON line without the trailing newline."""
        return self.model_dump_json(exclude_none=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def parse_line(cls, line: str) -> "LogRecord":
        return cls.model_validate(json.loads(line))


def format_duration(duration: Optional[timedelta]) -> str:
    """Human readable duration, e.g. '6m 0s'."""
    if duration is None:
        return "-"
    total = int(round(duration.total_seconds()))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
