import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Integer,
    JSON,
    Text,
    Uuid,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


class AuditLog(Base):
    """Append-only audit log for entry and panel mutations"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # time_entry|timesheet_row|omt_status
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)  # "{list_id}:{row_id}:{entry_id}" or profile id
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # STATUS|REVERT|TIME|DESCRIPTION|COMMENT|POSTPONE|SPLIT|CREATE|DELETE|CONFIRM|SEND
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)  # store user id
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # lead|staff|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # site_url, list_id, task ref, panel type
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


class TotalTimeAdjustment(Base):
    """Outbox row for a task TotalTime delta that could not be applied"""
    __tablename__ = "total_time_adjustments"

    id: Mapped[uuid.UUID] = uuid_pk()
    site_url: Mapped[str] = mapped_column(String(500), nullable=False)
    task_list_id: Mapped[str] = mapped_column(String(100), nullable=False)
    task_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    delta_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # pending|applied|abandoned
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_total_time_pending', 'status', 'created_at'),
    )
