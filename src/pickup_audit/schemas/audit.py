# src/pickup_audit/schemas/audit.py
"""Audit record schema shared by the dispatcher, sinks and outbox."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pickup_audit.db.time import as_utc, utcnow


class AuditRecord(BaseModel):
    """One audited state-changing operation.

    Records are created once at the call site and never mutated afterwards;
    the model is frozen so sinks can share the same instance safely.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow, description="UTC instant of the event")
    order_id: str = Field("", description="Order identifier, empty for collection operations")
    old_state: str = Field("", description="State before the operation")
    new_state: str = Field("", description="State after the operation")
    endpoint: str = Field("", description="Operation that triggered the event")
    request: str = Field("", description="Request summary")
    response: str = Field("", description="Response summary")
    message: str = Field("", description="Human-readable outcome")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    def to_payload(self) -> bytes:
        """Serialize the record to JSON bytes for the outbox."""
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_payload(cls, payload: bytes | str) -> AuditRecord:
        """Restore a record serialized with :meth:`to_payload`."""
        return cls.model_validate_json(payload)
