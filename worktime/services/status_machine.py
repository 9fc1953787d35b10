"""
Status state machine for time entries.

A status request equal to the entry's stored status is a revert to the
previous status; anything else is a forward move. Which role may request which
status is decided by services/permissions.py, not here.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..errors import CommentRequiredError, EntryNotFoundError
from ..schemas.timesheets import (
    Actor,
    EntryComment,
    EntryLocator,
    EntryStatus,
    PanelType,
    TaskRef,
    TimeEntry,
    TimeHistoryRecord,
)
from .entry_matcher import find_entry
from .entry_store import LoadedRow, RowAddress, mutate_row
from .list_store import ListStoreClient
from .time_rules import minutes_to_hours, now_stamp
from .total_time import adjust_task_total_time

logger = structlog.get_logger(__name__)

S = EntryStatus
P = PanelType

# (current status, panel type) -> status restored by a revert when the entry
# has no usable TimeHistory. Pairs not listed fall back to Suggestion.
FALLBACK_TABLE: Dict[Tuple[EntryStatus, PanelType], EntryStatus] = {}
for _panel in PanelType:
    FALLBACK_TABLE[(S.CONFIRMED, _panel)] = S.SUGGESTION
    FALLBACK_TABLE[(S.APPROVED, _panel)] = S.FOR_APPROVAL
    for _side in (S.QUESTION, S.REJECTED):
        FALLBACK_TABLE[(_side, _panel)] = (
            S.SUGGESTION if _panel in (P.CONFIRMED, P.DRAFT, P.SUGGESTION) else S.FOR_APPROVAL
        )
    FALLBACK_TABLE[(S.FOR_APPROVAL, _panel)] = (
        S.SUGGESTION if _panel in (P.FOR_APPROVAL, P.DRAFT, P.SUGGESTION) else S.CONFIRMED
    )
del _panel, _side

COMMENT_REQUIRED = (S.QUESTION, S.REJECTED)


@dataclass
class TransitionResult:
    previous: Optional[str]
    status: str
    reverted: bool
    entry: TimeEntry


def _as_status(value) -> Optional[EntryStatus]:
    try:
        return EntryStatus(value)
    except ValueError:
        return None


def fallback_previous_status(current, panel_type) -> EntryStatus:
    status = _as_status(current)
    try:
        panel = PanelType(panel_type)
    except ValueError:
        panel = None
    if status is None or panel is None:
        return S.SUGGESTION
    return FALLBACK_TABLE.get((status, panel), S.SUGGESTION)


def previous_status_from_history(entry: TimeEntry, current: Optional[str] = None) -> Optional[str]:
    """
    Nearest status in TimeHistory that differs from the current one.

    History is scanned newest first (by record Id); records without a status
    are skipped, as is the leading run equal to the current status.

    Returns:
        Status string, or None when history holds no distinct earlier status
    """
    current = entry.Status if current is None else current
    records = sorted(
        (r for r in entry.TimeHistory if r.Status),
        key=lambda r: r.Id if r.Id is not None else -1,
        reverse=True,
    )
    for record in records:
        if record.Status != current:
            return record.Status
    return None


def resolve_revert_target(entry: TimeEntry, panel_type) -> str:
    from_history = previous_status_from_history(entry)
    if from_history:
        return from_history
    return fallback_previous_status(entry.Status, panel_type).value


def _next_id(records) -> int:
    ids = [r.Id for r in records if r.Id is not None]
    return (max(ids) if ids else 0) + 1


def _actor_fields(actor: Actor) -> dict:
    return {
        "AuthorName": actor.display_name,
        "AuthorImage": actor.AuthorImage or "",
        "AuthorId": actor.author_id,
    }


def append_time_history(entry: TimeEntry, actor: Actor, status: Optional[str] = None) -> TimeHistoryRecord:
    """Append a snapshot of the entry's minutes (and a status, when one is being set)."""
    record = TimeHistoryRecord(
        Id=_next_id(entry.TimeHistory),
        TaskTimeInMin=entry.minutes,
        TaskTime=minutes_to_hours(entry.minutes),
        date=now_stamp(),
        **_actor_fields(actor),
    )
    if status is not None:
        record.Status = status
    entry.TimeHistory = entry.TimeHistory + [record]
    return record


def append_comment(entry: TimeEntry, text: str, actor: Actor) -> EntryComment:
    comment = EntryComment(Id=_next_id(entry.Comments), text=text, date=now_stamp(), **_actor_fields(actor))
    entry.Comments = entry.Comments + [comment]
    return comment


def _locate(row: LoadedRow, locator: EntryLocator) -> Tuple[int, TimeEntry]:
    found = find_entry(row.entries, locator.probe())
    if found is None:
        raise EntryNotFoundError()
    return found


def _address(locator: EntryLocator) -> RowAddress:
    return RowAddress(locator.site_url, locator.list_id, locator.parent_id)


async def propagate_delta(
    client: ListStoreClient,
    task: Optional[TaskRef],
    default_site: str,
    delta: int,
    db: Optional[Session] = None,
) -> bool:
    if task is None or not delta:
        return False
    return await adjust_task_total_time(
        client, task.site_url or default_site, task.list_id, task.task_id, delta, db=db
    )


async def apply_status(
    client: ListStoreClient,
    locator: EntryLocator,
    new_status,
    actor: Actor,
    panel_type=PanelType.CONFIRMED,
    comment: Optional[str] = None,
) -> TransitionResult:
    """
    Request a status for one entry.

    Args:
        client: List store client
        locator: Row address plus whatever identity the caller holds
        new_status: Requested status label
        actor: Acting user, recorded on the history snapshot
        panel_type: Panel the request comes from; picks the revert fallback
        comment: Required for a forward move to Question or Rejected

    Returns:
        TransitionResult with the stored status before and after

    Raises:
        EntryNotFoundError, CommentRequiredError, StoreRequestError
    """
    requested = EntryStatus(new_status).value

    def mutate(row: LoadedRow) -> TransitionResult:
        index, entry = _locate(row, locator)
        previous = entry.Status
        reverted = previous == requested
        if reverted:
            target = resolve_revert_target(entry, panel_type)
        else:
            target = requested
            if _as_status(target) in COMMENT_REQUIRED:
                if not (comment or "").strip():
                    raise CommentRequiredError()
                append_comment(entry, comment.strip(), actor)
        append_time_history(entry, actor, status=target)
        entry.Status = target
        row.entries[index] = entry
        return TransitionResult(previous=previous, status=target, reverted=reverted, entry=entry)

    result = await mutate_row(client, _address(locator), mutate)
    logger.info(
        "entry_status_reverted" if result.reverted else "entry_status_changed",
        row_id=locator.parent_id,
        entry_id=result.entry.identity,
        previous=result.previous,
        status=result.status,
    )
    return result


async def update_entry_time(
    client: ListStoreClient,
    locator: EntryLocator,
    minutes: int,
    actor: Actor,
    db: Optional[Session] = None,
) -> Tuple[TimeEntry, int]:
    """
    Set an entry's duration, snapshot it to TimeHistory and propagate the
    minute delta to the task.

    Returns:
        (entry, delta)
    """

    def mutate(row: LoadedRow):
        index, entry = _locate(row, locator)
        old_minutes = entry.minutes
        entry.set_minutes(minutes)
        append_time_history(entry, actor)
        row.entries[index] = entry
        return entry, minutes - old_minutes

    entry, delta = await mutate_row(client, _address(locator), mutate)
    logger.info("entry_time_updated", row_id=locator.parent_id, entry_id=entry.identity, delta=delta)
    await propagate_delta(client, locator.task, locator.site_url, delta, db=db)
    return entry, delta


async def update_entry_description(
    client: ListStoreClient,
    locator: EntryLocator,
    description: str,
    actor: Actor,
) -> TimeEntry:
    def mutate(row: LoadedRow) -> TimeEntry:
        index, entry = _locate(row, locator)
        entry.Description = description
        append_time_history(entry, actor)
        row.entries[index] = entry
        return entry

    entry = await mutate_row(client, _address(locator), mutate)
    logger.info("entry_description_updated", row_id=locator.parent_id, entry_id=entry.identity)
    return entry


async def add_entry_comment(
    client: ListStoreClient,
    locator: EntryLocator,
    text: str,
    actor: Actor,
    status=None,
) -> TimeEntry:
    """Append a comment; with a status, also move the entry to it."""
    if not (text or "").strip():
        raise CommentRequiredError()

    def mutate(row: LoadedRow) -> TimeEntry:
        index, entry = _locate(row, locator)
        append_comment(entry, text.strip(), actor)
        if status is not None:
            target = EntryStatus(status).value
            append_time_history(entry, actor, status=target)
            entry.Status = target
        row.entries[index] = entry
        return entry

    entry = await mutate_row(client, _address(locator), mutate)
    logger.info("entry_comment_added", row_id=locator.parent_id, entry_id=entry.identity, status=entry.Status)
    return entry
