"""
Observability backend events for the TDD cycle metrics pipeline.

Cycle log records are forwarded to Langfuse through its public ingestion
API. This module provides:
- Typed ingestion event definitions
- A factory that turns a LogRecord into a trace-create event
- Stable ids, so re-publishing a commit updates the same trace
- Batch serialization for the ingestion endpoint
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, Field

from shared.models import LogRecord, utc_now

# Namespace for trace ids derived from commit hashes.
TRACE_NAMESPACE = uuid.UUID("6f1c8a52-2f0e-4b8e-9a57-2d4f6f0e3c11")

INGESTION_PATH = "/api/public/ingestion"


class EventType(Enum):
    """Langfuse ingestion event types used by this pipeline."""
    TRACE_CREATE = "trace-create"
    EVENT_CREATE = "event-create"


class IngestionEvent(BaseModel):
    """One entry of an ingestion batch."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Event id")
    timestamp: datetime = Field(default_factory=utc_now, description="Event creation time")
    type: EventType = Field(..., description="Ingestion event type")
    body: Dict[str, Any] = Field(..., description="Type specific payload")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class IngestionBatch(BaseModel):
    """Request body for the ingestion endpoint."""

    batch: List[IngestionEvent] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


def trace_id_for(commit_hash: str) -> str:
    """Deterministic trace id for a commit."""
    return str(uuid.uuid5(TRACE_NAMESPACE, commit_hash))


class EventFactory:
    """Builds ingestion events from cycle log records."""

    def __init__(self, trace_name: str = "tdd-cycle", source: str = "post-commit"):
        self.trace_name = trace_name
        self.source = source

    def create_trace_event(self, record: LogRecord) -> IngestionEvent:
        """Trace for one commit, tagged with its phase and branch."""
        metadata = {
            "commit_hash": record.commit_hash,
            "branch": record.branch,
            "repository": record.repository,
            "phase": record.phase.value,
            "files_changed": record.files_changed,
            "lines_added": record.lines_added,
            "lines_removed": record.lines_removed,
            "occurred_at": record.occurred_at.isoformat(),
            "abandoned_cycle": record.abandoned_cycle,
            "orphan_green": record.orphan_green,
            "duplicate": record.duplicate,
            "cycle_state": record.cycle_state,
            "schema_version": record.schema_version,
            "source": self.source,
        }
        if record.cycle_duration_seconds is not None:
            metadata["cycle_duration_seconds"] = record.cycle_duration_seconds
        if record.cycle_started_at is not None:
            metadata["cycle_started_at"] = record.cycle_started_at.isoformat()

        tags = [f"phase:{record.phase.value}", f"branch:{record.branch}"]
        if record.cycle_duration_seconds is not None:
            tags.append("cycle:closed")

        body = {
            "id": trace_id_for(record.commit_hash),
            "name": self.trace_name,
            "timestamp": record.occurred_at.isoformat(),
            "userId": record.author,
            "sessionId": f"{record.repository}:{record.branch}",
            "input": record.message,
            "output": record.phase.value,
            "metadata": metadata,
            "tags": tags,
        }
        return IngestionEvent(type=EventType.TRACE_CREATE, body=body)

    def create_batch(self, records: List[LogRecord]) -> IngestionBatch:
        return IngestionBatch(
            batch=[self.create_trace_event(record) for record in records],
            metadata={"source": self.source},
        )


class EventSerializer:
    """Serialization helpers for ingestion batches."""

    @staticmethod
    def serialize(batch: IngestionBatch) -> str:
        return batch.model_dump_json()

    @staticmethod
    def to_payload(batch: IngestionBatch) -> Dict[str, Any]:
        return batch.model_dump(mode="json")

    @staticmethod
    def deserialize(data: str) -> IngestionBatch:
        return IngestionBatch.model_validate(json.loads(data))


class IngestionResponse(BaseModel):
    """Multi-status answer from the ingestion endpoint."""

    successes: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Optional[Any]) -> "IngestionResponse":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            successes=list(payload.get("successes") or []),
            errors=list(payload.get("errors") or []),
        )

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)
