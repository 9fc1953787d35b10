"""
Audit trail for timesheet mutations.

Rows are append-only. Each one carries a SHA-256 hash over its canonical JSON
so later tampering with the stored row can be detected with verify_integrity.
"""
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog


def entry_entity_id(list_id: str, row_id, entry_id) -> str:
    return f"{list_id}:{row_id}:{entry_id}"


def _canonical(
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str],
    actor_role: Optional[str],
    source: Optional[str],
    timestamp_utc: datetime,
    changes: Optional[Dict[str, Any]],
    context: Optional[Dict[str, Any]],
) -> str:
    data = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "actor_id": actor_id,
        "actor_role": actor_role,
        "source": source,
        "timestamp_utc": timestamp_utc.isoformat(),
        "changes": changes,
        "context": context,
    }
    return json.dumps({k: v for k, v in data.items() if v is not None}, sort_keys=True, default=str)


def integrity_hash(canonical_json: str, secret: str) -> str:
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Append one audit row and commit it.

    Args:
        db: Database session
        entity_type: time_entry | omt_status
        entity_id: Entity key; entries use entry_entity_id
        action: STATUS | REVERT | TIME | DESCRIPTION | COMMENT | POSTPONE | SPLIT | CREATE | DELETE | CONFIRM | SEND
        actor_id: Store user id of the acting user
        actor_role: lead | staff | system
        source: api | system (defaults to api)
        changes_json: Before/after values
        context: Site, list, row, task and panel details
        integrity_secret: Hash key, AUDIT_SECRET when omitted; empty disables hashing

    Returns:
        The stored AuditLog
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)
    entity_id = str(entity_id)
    actor_id = str(actor_id) if actor_id is not None else None
    source = source or "api"
    secret = settings.audit_secret if integrity_secret is None else integrity_secret

    digest = None
    if secret:
        digest = integrity_hash(
            _canonical(entity_type, entity_id, action, actor_id, actor_role, source, timestamp_utc, changes_json, context),
            secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source,
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=digest,
    )
    db.add(audit_log)
    db.commit()
    db.refresh(audit_log)
    return audit_log


def verify_integrity(log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    secret = settings.audit_secret if integrity_secret is None else integrity_secret
    if not secret or not log.integrity_hash:
        return False
    canonical = _canonical(
        log.entity_type, log.entity_id, log.action, log.actor_id, log.actor_role, log.source,
        log.timestamp_utc.replace(tzinfo=None), log.changes_json, log.context,
    )
    return integrity_hash(canonical, secret) == log.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    if actor_id:
        query = query.filter(AuditLog.actor_id == str(actor_id))
    return query.order_by(AuditLog.timestamp_utc.desc()).offset(offset).limit(limit).all()
