"""
Postpone, split, add and delete for time entries.

Postpone moves an entry (remove + re-add under a new id); split is additive
and keeps the original. Both, like add and delete, propagate the resulting
minute delta to the referenced task after the row has been saved.
"""
import uuid
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..errors import EmptySplitError, EntryNotFoundError
from ..schemas.timesheets import (
    Actor,
    EntryLocator,
    EntryStatus,
    NewEntryItem,
    RowRef,
    SplitItem,
    TaskRef,
    TimeEntry,
    TimeHistoryRecord,
)
from .entry_matcher import find_by_identity, find_entry, next_entry_id, same_slot
from .entry_store import LoadedRow, RowAddress, mutate_row
from .list_store import ListStoreClient
from .status_machine import propagate_delta
from .time_rules import TASK_DATE_FORMAT, minutes_to_hours, now_stamp, parse_task_date

logger = structlog.get_logger(__name__)


def new_unique_id() -> str:
    return str(uuid.uuid4())


def _seeded_history(original: TimeEntry, minutes: int, actor: Actor) -> List[TimeHistoryRecord]:
    ids = [r.Id for r in original.TimeHistory if r.Id is not None]
    seed = TimeHistoryRecord(
        Id=(max(ids) if ids else 0) + 1,
        TaskTimeInMin=minutes,
        TaskTime=minutes_to_hours(minutes),
        Status=EntryStatus.DRAFT.value,
        date=now_stamp(),
        AuthorName=actor.display_name,
        AuthorId=actor.author_id,
    )
    return [r.model_copy() for r in original.TimeHistory] + [seed]


def clone_entry(
    original: TimeEntry,
    entry_id: int,
    task_date: str,
    minutes: int,
    description: str,
    actor: Actor,
) -> TimeEntry:
    """
    Copy of `original` moved to a new date/duration under a fresh id, reset to
    Draft and authored by the actor. Unknown store fields are carried over.
    """
    data = original.model_dump(exclude_unset=True)
    data.update(
        ID=entry_id,
        Id=entry_id,
        UniqueId=new_unique_id(),
        TaskDate=task_date,
        TaskTime=minutes_to_hours(minutes),
        TaskTimeInMin=minutes,
        Description=description or original.Description or "",
        AuthorName=actor.display_name or original.AuthorName,
        AuthorId=actor.author_id if actor.author_id is not None else original.AuthorId,
        AuthorImage=actor.AuthorImage or original.AuthorImage or "",
        Status=EntryStatus.DRAFT.value,
        WorkingDate=task_date,
    )
    data.pop("TimeHistory", None)
    clone = TimeEntry.model_validate(data)
    clone.TimeHistory = _seeded_history(original, minutes, actor)
    return clone


def _address(locator: EntryLocator) -> RowAddress:
    return RowAddress(locator.site_url, locator.list_id, locator.parent_id)


async def postpone_entry(
    client: ListStoreClient,
    locator: EntryLocator,
    new_date: str,
    minutes: int,
    description: str,
    actor: Actor,
    db: Optional[Session] = None,
) -> Tuple[TimeEntry, int]:
    """
    Move an entry to a new date and duration.

    The matched original is removed together with anything sharing its id +
    author + date; a sibling sharing its id under another date is kept. The
    clone is appended with id max(ID) + 1.

    Args:
        client: List store client
        locator: Entry to move
        new_date: Target DD/MM/YYYY
        minutes: New duration
        description: New description; empty keeps the original's
        actor: Acting user, becomes the clone's author
        db: Optional session for the total-time outbox

    Returns:
        (new entry, minute delta applied to the task)
    """

    def mutate(row: LoadedRow):
        found = find_entry(row.entries, locator.probe())
        if found is None:
            raise EntryNotFoundError()
        index, original = found
        clone = clone_entry(original, next_entry_id(row.entries), new_date, minutes, description, actor)
        row.entries = [e for i, e in enumerate(row.entries) if i != index and not same_slot(e, original)]
        row.entries.append(clone)
        return clone, minutes - original.minutes

    clone, delta = await mutate_row(client, _address(locator), mutate)
    logger.info(
        "entry_postponed",
        row_id=locator.parent_id,
        entry_id=clone.identity,
        task_date=new_date,
        delta=delta,
    )
    await propagate_delta(client, locator.task, locator.site_url, delta, db=db)
    return clone, delta


async def split_entry(
    client: ListStoreClient,
    locator: EntryLocator,
    items: List[SplitItem],
    description: str,
    actor: Actor,
    db: Optional[Session] = None,
) -> Tuple[List[TimeEntry], int]:
    """
    Append one new Draft entry per item, keeping the original untouched.
    The task gains the sum of the items' minutes.

    Raises:
        EmptySplitError when no items are given
    """
    if not items:
        raise EmptySplitError()

    def mutate(row: LoadedRow):
        found = find_entry(row.entries, locator.probe())
        if found is None:
            raise EntryNotFoundError()
        _, original = found
        first_id = next_entry_id(row.entries)
        legs = [
            clone_entry(original, first_id + i, item.date, item.minutes, description, actor)
            for i, item in enumerate(items)
        ]
        row.entries.extend(legs)
        return legs

    legs = await mutate_row(client, _address(locator), mutate)
    total = sum(item.minutes for item in items)
    logger.info("entry_split", row_id=locator.parent_id, legs=len(legs), total=total)
    if total > 0:
        await propagate_delta(client, locator.task, locator.site_url, total, db=db)
    return legs, total


def build_new_entry(
    item: NewEntryItem,
    entry_id: int,
    row_id: int,
    actor: Actor,
    created_from: str = "Mobile",
    category_id: Optional[int] = None,
) -> TimeEntry:
    entry = TimeEntry(
        AuthorName=actor.display_name,
        AuthorId=actor.author_id,
        AuthorImage=actor.AuthorImage or "",
        Status=EntryStatus.DRAFT.value,
        ID=entry_id,
        UniqueId=new_unique_id(),
        MainParentId=row_id,
        ParentID=row_id,
        TaskDate=item.date,
        Description=item.description or "",
        TaskDates=parse_task_date(item.date).strftime("%a, " + TASK_DATE_FORMAT),
        CreatedFrom=created_from or "Mobile",
    )
    entry.set_minutes(item.minutes)
    if category_id is not None:
        entry.CategoryId = category_id
    entry.TimeHistory = _seeded_history(entry, item.minutes, actor)
    return entry


async def add_entries(
    client: ListStoreClient,
    row_ref: RowRef,
    items: List[NewEntryItem],
    actor: Actor,
    task: Optional[TaskRef] = None,
    created_from: str = "Mobile",
    db: Optional[Session] = None,
) -> Tuple[List[TimeEntry], int]:
    """Append new Draft entries authored by the actor; the task gains their minutes."""
    address = RowAddress(row_ref.site_url, row_ref.list_id, row_ref.row_id)

    def mutate(row: LoadedRow):
        created = []
        for item in items:
            entry = build_new_entry(
                item, next_entry_id(row.entries), row_ref.row_id, actor, created_from, row_ref.category_id
            )
            row.entries.append(entry)
            created.append(entry)
        return created

    created = await mutate_row(client, address, mutate)
    total = sum(e.minutes for e in created)
    logger.info("entries_added", row_id=row_ref.row_id, count=len(created), total=total)
    if total > 0:
        await propagate_delta(client, task, row_ref.site_url, total, db=db)
    return created, total


async def delete_entry(
    client: ListStoreClient,
    row_ref: RowRef,
    entry_id,
    task: Optional[TaskRef] = None,
    db: Optional[Session] = None,
) -> TimeEntry:
    """
    Remove an entry by ID or UniqueId and take its minutes off the task.

    Raises:
        EntryNotFoundError when nothing in the row carries that id
    """
    address = RowAddress(row_ref.site_url, row_ref.list_id, row_ref.row_id)

    def mutate(row: LoadedRow) -> TimeEntry:
        found = find_by_identity(row.entries, entry_id)
        if found is None:
            raise EntryNotFoundError()
        _, removed = found
        row.entries = [e for e in row.entries if find_by_identity([e], entry_id) is None]
        return removed

    removed = await mutate_row(client, address, mutate)
    logger.info("entry_deleted", row_id=row_ref.row_id, entry_id=entry_id, minutes=removed.minutes)
    if removed.minutes > 0:
        await propagate_delta(client, task, row_ref.site_url, -removed.minutes, db=db)
    return removed
