"""
Total-time propagation.

A task's TotalTime is maintained incrementally: every entry write that changes
minutes applies a signed delta to the referenced task. The entry write has
already been committed by the time this runs, so failures never propagate to
the caller. They are logged and, when a DB session is available, kept in the
TotalTimeAdjustment outbox for a later reconcile_pending pass.
"""
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import StoreRequestError
from ..models.models import TotalTimeAdjustment
from .list_store import ListStoreClient

logger = structlog.get_logger(__name__)

MAX_RECONCILE_ATTEMPTS = 5


async def apply_total_time_delta(
    client: ListStoreClient,
    site_url: str,
    task_list_id: str,
    task_id: int,
    delta_minutes: int,
) -> int:
    """
    Read TotalTime and the task's type tag, write back existing + delta.

    Returns:
        The TotalTime value written

    Raises:
        StoreRequestError on read or write failure
    """
    url = client.items_url(site_url, task_list_id, task_id)
    data = await client.get(url, params={"$select": "Id,TotalTime"}, operation="read_total_time")
    type_tag = (data.get("__metadata") or {}).get("type") or await client.list_entity_type(site_url, task_list_id)
    try:
        existing = float(data.get("TotalTime") or 0)
    except (TypeError, ValueError):
        existing = 0
    updated = existing + delta_minutes
    if updated == int(updated):
        updated = int(updated)
    await client.merge(url, {"TotalTime": updated, "__metadata": {"type": type_tag}}, operation="write_total_time")
    return updated


def _record_pending(db: Session, site_url: str, task_list_id: str, task_id: int, delta: int, error: str) -> None:
    row = TotalTimeAdjustment(
        site_url=site_url,
        task_list_id=task_list_id,
        task_id=task_id,
        delta_minutes=delta,
        status="pending",
        attempts=1,
        last_error=error[:500],
    )
    db.add(row)
    db.commit()


async def adjust_task_total_time(
    client: ListStoreClient,
    site_url: Optional[str],
    task_list_id: Optional[str],
    task_id: Optional[int],
    delta_minutes: int,
    db: Optional[Session] = None,
) -> bool:
    """
    Apply a signed minute delta to a task's TotalTime, best effort.

    Args:
        client: List store client
        site_url: Site holding the task list
        task_list_id: Task list id
        task_id: Task item id
        delta_minutes: Signed minutes; zero is a no-op
        db: Optional session; failed deltas are queued there for reconciliation

    Returns:
        True when the delta was written
    """
    if not delta_minutes:
        return False
    if not site_url or not task_list_id or task_id is None:
        logger.warning("total_time_missing_task_ref", task_id=task_id, delta=delta_minutes)
        return False
    try:
        updated = await apply_total_time_delta(client, site_url, task_list_id, task_id, delta_minutes)
    except Exception as e:
        status_code = getattr(e, "status_code", None)
        message = e.message if isinstance(e, StoreRequestError) else repr(e)
        logger.warning(
            "total_time_update_failed",
            task_id=task_id,
            delta=delta_minutes,
            status_code=status_code,
            error=message,
            exc_info=not isinstance(e, StoreRequestError),
        )
        # a missing task will never accept the delta
        if db is not None and settings.outbox_enabled and status_code != 404:
            _record_pending(db, site_url, task_list_id, task_id, delta_minutes, message)
        return False
    logger.info("total_time_updated", task_id=task_id, delta=delta_minutes, total=updated)
    return True


async def reconcile_pending(client: ListStoreClient, db: Session, limit: int = 100) -> dict:
    """
    Re-apply queued deltas oldest first (at-least-once).

    Rows that keep failing are abandoned after MAX_RECONCILE_ATTEMPTS.

    Returns:
        {"applied": n, "failed": n, "abandoned": n}
    """
    pending = (
        db.query(TotalTimeAdjustment)
        .filter(TotalTimeAdjustment.status == "pending")
        .order_by(TotalTimeAdjustment.created_at.asc())
        .limit(limit)
        .all()
    )
    summary = {"applied": 0, "failed": 0, "abandoned": 0}
    for row in pending:
        try:
            await apply_total_time_delta(client, row.site_url, row.task_list_id, row.task_id, row.delta_minutes)
        except Exception as e:
            status_code = getattr(e, "status_code", None)
            row.attempts += 1
            row.last_error = (e.message if isinstance(e, StoreRequestError) else repr(e))[:500]
            if row.attempts >= MAX_RECONCILE_ATTEMPTS or status_code == 404:
                row.status = "abandoned"
                summary["abandoned"] += 1
                logger.warning("total_time_adjustment_abandoned", adjustment_id=str(row.id), task_id=row.task_id)
            else:
                summary["failed"] += 1
            db.commit()
            continue
        row.status = "applied"
        row.applied_at = datetime.utcnow()
        db.commit()
        summary["applied"] += 1
    logger.info("total_time_reconciled", **summary)
    return summary
