"""
Confirmation panel orchestration.

For one (date, viewed user) pair: gather the entries from every timesheet
source, work out per-row actions from role and status, drive status presses,
and perform the two panel-level sends (confirm with staff, send to management)
that write the viewed user's OMTStatus history and notify the workflow.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..config import settings
from ..errors import (
    ActionNotAllowedError,
    AlreadySentError,
    CommentRequiredError,
    NothingToSendError,
    StoreRequestError,
    TaskUserNotFoundError,
    WorktimeError,
)
from ..schemas.timesheets import (
    Actor,
    EntryLocator,
    EntryStatus,
    OMTStatusRecord,
    PanelType,
    TaskRef,
    TimeEntry,
)
from . import permissions
from .entry_matcher import entries_on_date
from .entry_store import ENTRIES_FIELD, parse_entries
from .list_store import ListStoreClient
from .notifications import build_notification_payload, post_notification
from .status_machine import TransitionResult, apply_status
from .task_users import append_omt_status, parse_omt_status, records_for_date
from .time_rules import date_part, modified_since, now_stamp

logger = structlog.get_logger(__name__)

# Rows reference their task through a per-site lookup column, e.g. TaskHHHHId
TASK_LOOKUP_FIELD = re.compile(r"^Task(?P<site_type>[A-Za-z0-9_]+)Id$")

TIMELINE_STEPS = (
    (EntryStatus.SUGGESTION.value, "WT Suggested"),
    (EntryStatus.CONFIRMED.value, "WT Confirmed"),
    (EntryStatus.FOR_APPROVAL.value, "EOD Submitted"),
    (EntryStatus.APPROVED.value, "EOD Approved"),
)


@dataclass
class SourceError:
    site_url: str
    list_id: str
    status_code: Optional[int]
    message: str


@dataclass
class PanelSendResult:
    record: OMTStatusRecord
    history: List[OMTStatusRecord]
    notified: bool


# ---- Loading ----


async def _load_source(client: ListStoreClient, source: Dict[str, Any], since: str) -> List[dict]:
    site_url, list_id = source["site_url"], source["list_id"]
    rows = await client.get_results(
        client.items_url(site_url, list_id),
        params={"$filter": f"(Modified ge '{since}') and (TimesheetTitle/Id ne null)"},
        operation="load_timesheet_rows",
    )
    for row in rows:
        row["siteUrl"] = site_url
        row["listId"] = list_id
        row["taskLists"] = source.get("task_lists") or {}
    return rows


async def load_rows_for_date(
    client: ListStoreClient,
    sources: List[Dict[str, Any]],
    task_date: str,
) -> Tuple[List[dict], List[SourceError]]:
    """
    Fetch rows modified since two days before the date from every source at once.

    A failing source does not abort the batch; it is reported as a SourceError.

    Returns:
        (rows, per-source errors)
    """
    since = modified_since(task_date)
    if since is None or not sources:
        return [], []
    results = await asyncio.gather(
        *(_load_source(client, s, since) for s in sources),
        return_exceptions=True,
    )
    rows: List[dict] = []
    errors: List[SourceError] = []
    for source, result in zip(sources, results):
        if isinstance(result, Exception):
            status_code = getattr(result, "status_code", None)
            message = result.message if isinstance(result, StoreRequestError) else repr(result)
            logger.warning(
                "timesheet_source_failed",
                site_url=source["site_url"],
                list_id=source["list_id"],
                status_code=status_code,
                error=message,
            )
            errors.append(SourceError(source["site_url"], source["list_id"], status_code, message))
            continue
        if isinstance(result, BaseException):
            raise result
        rows.extend(result)
    return rows, errors


def task_item_for_row(row: dict) -> Optional[Dict[str, Any]]:
    for key, value in row.items():
        match = TASK_LOOKUP_FIELD.match(key)
        if match and isinstance(value, int) and not isinstance(value, bool):
            site_type = match.group("site_type")
            return {
                "Id": value,
                "siteType": site_type,
                "listId": (row.get("taskLists") or {}).get(site_type),
                "Title": row.get("TaskTitle") or "",
            }
    return None


def _duration_hours(entry: TimeEntry) -> float:
    if entry.TaskTime is not None:
        return entry.TaskTime
    return entry.minutes / 60


def gather_entries_for_date(rows: List[dict], task_date: str, viewed_user_id=None) -> List[TimeEntry]:
    """
    Flatten the rows' entries dated `task_date`, optionally only those authored
    by `viewed_user_id`. Each entry is stamped with the row it came from
    (ParentID, TimesheetListId, siteUrl, CategoryId, TaskItem) so it can be
    written back. Negative durations are dropped.
    """
    task_date = task_date.strip()
    wanted = None if viewed_user_id in (None, "") else str(viewed_user_id)
    gathered = []
    for row in rows:
        category = row.get("Category") if isinstance(row.get("Category"), dict) else {}
        task_item = task_item_for_row(row)
        for entry in entries_on_date(parse_entries(row.get(ENTRIES_FIELD)), task_date):
            if wanted is not None and str(entry.AuthorId) != wanted:
                continue
            data = entry.model_dump(exclude_unset=True)
            data.update(
                ParentID=entry.ParentID if entry.ParentID is not None else row.get("Id"),
                TimesheetListId=row.get("listId"),
                siteUrl=row.get("siteUrl"),
                CategoryId=category.get("Id", entry.CategoryId),
            )
            if task_item is not None:
                data["TaskItem"] = task_item
            stamped = TimeEntry.model_validate(data)
            if _duration_hours(stamped) < 0:
                continue
            gathered.append(stamped)
    return gathered


async def load_panel_entries(
    client: ListStoreClient,
    task_date: str,
    viewed_user_id=None,
    sources: Optional[List[Dict[str, Any]]] = None,
) -> Tuple[List[TimeEntry], List[SourceError]]:
    rows, errors = await load_rows_for_date(client, settings.timesheet_sources() if sources is None else sources, task_date)
    return gather_entries_for_date(rows, task_date, viewed_user_id), errors


def row_key(entry: TimeEntry) -> str:
    task = (entry.model_extra or {}).get("TaskItem") or {}
    return f"{entry.ParentID}_{task.get('Id', '')}_{entry.identity}"


def locator_for(entry: TimeEntry) -> EntryLocator:
    """Locator for an entry produced by gather_entries_for_date."""
    extra = entry.model_extra or {}
    task = extra.get("TaskItem") or {}
    task_ref = None
    if task.get("Id") is not None and task.get("listId"):
        task_ref = TaskRef(
            list_id=task["listId"],
            task_id=task["Id"],
            site_url=extra.get("siteUrl"),
            site_type=task.get("siteType"),
            title=task.get("Title"),
        )
    return EntryLocator(
        site_url=extra.get("siteUrl") or "",
        list_id=extra.get("TimesheetListId") or "",
        parent_id=entry.ParentID,
        id=entry.identity,
        unique_id=entry.UniqueId,
        author_id=entry.AuthorId,
        task_date=entry.TaskDate,
        task=task_ref,
    )


# ---- Row actions ----


@dataclass
class PanelState:
    """At most one pressed action per row; pressing it again reverts."""

    panel_type: PanelType
    lead: bool
    active: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: List[TimeEntry], panel_type, lead: bool) -> "PanelState":
        state = cls(PanelType(panel_type), lead)
        for entry in entries:
            action = permissions.initial_active_action(entry.Status, state.panel_type, lead)
            if action:
                state.active[row_key(entry)] = action
        return state

    def active_action(self, entry: TimeEntry) -> Optional[str]:
        return self.active.get(row_key(entry))

    def press(self, entry: TimeEntry, action: str) -> str:
        key = row_key(entry)
        if self.active.get(key) == action:
            self.active.pop(key, None)
            return "revert"
        self.active[key] = action
        return "forward"

    def restore(self, entry: TimeEntry, action: Optional[str]) -> None:
        key = row_key(entry)
        if action is None:
            self.active.pop(key, None)
        else:
            self.active[key] = action

    def settle(self, entry: TimeEntry, result: TransitionResult) -> None:
        key = row_key(entry)
        if result.reverted:
            self.active.pop(key, None)
        else:
            self.active[key] = result.status


async def press_action(
    client: ListStoreClient,
    state: PanelState,
    entry: TimeEntry,
    action: str,
    actor: Actor,
    comment: Optional[str] = None,
    locator: Optional[EntryLocator] = None,
) -> TransitionResult:
    """
    Press one row button: forward to `action`, or revert when the entry
    already holds it. The stored status decides; the panel's own view of
    the press is logged as `intent` and the row state settles to the result.

    Raises:
        ActionNotAllowedError when the button is not offered for this role/panel
    """
    if action not in permissions.allowed_actions(entry.Status, state.panel_type, state.lead):
        raise ActionNotAllowedError(f"{action} is not available in the {state.panel_type.value} panel")
    before = state.active_action(entry)
    intent = state.press(entry, action)
    try:
        result = await apply_status(
            client,
            locator or locator_for(entry),
            action,
            actor,
            panel_type=state.panel_type,
            comment=comment,
        )
    except WorktimeError:
        state.restore(entry, before)
        raise
    state.settle(entry, result)
    logger.info(
        "panel_action_pressed",
        row_key=row_key(entry),
        action=action,
        intent=intent,
        reverted=result.reverted,
        status=result.status,
    )
    return result


# ---- OMT history ----


def already_sent_to_management(records: List[OMTStatusRecord], task_date: str) -> bool:
    day = date_part(task_date)
    return any(
        date_part(r.TaskDate) == day and str(r.Status).lower() == "approved"
        for r in records
    )


def timeline_steps(records: List[OMTStatusRecord], task_date: str) -> Tuple[List[Dict[str, Any]], int]:
    """
    Progress steps for the day from the OMT history.

    Returns:
        (steps, index of the last completed step or -1)
    """
    done = {r.Status for r in records_for_date(records, task_date)}
    steps = [{"key": key, "label": label, "completed": key in done} for key, label in TIMELINE_STEPS]
    last = -1
    for index, step in enumerate(steps):
        if step["completed"]:
            last = index
    return steps, last


def _omt_record(acting: Actor, status: str, message: str, task_date: str) -> OMTStatusRecord:
    return OMTStatusRecord(
        AuthorName=acting.display_name,
        AuthorId=acting.author_id,
        AuthorImage=acting.AuthorImage or "",
        Status=status,
        ActionDate=now_stamp(),
        comment=message,
        TaskDate=task_date,
    )


async def _record_and_notify(
    client: ListStoreClient,
    kind: str,
    status: str,
    acting: Actor,
    viewed: Actor,
    panel_type: PanelType,
    task_date: str,
    entries: List[TimeEntry],
    message: str,
) -> PanelSendResult:
    if viewed.Id is None:
        raise TaskUserNotFoundError(str(viewed.AssingedToUserId))
    record_date = entries[0].TaskDate or task_date
    record = _omt_record(acting, status, message, record_date)
    history = await append_omt_status(client, viewed.Id, record)
    viewed.OMTStatus = history
    payload = build_notification_payload(kind, entries, viewed, acting, panel_type.value, task_date, message)
    notified = await post_notification(client, payload)
    return PanelSendResult(record=record, history=history, notified=notified)


async def confirm_with_staff(
    client: ListStoreClient,
    acting: Actor,
    viewed: Actor,
    panel_type,
    task_date: str,
    entries: List[TimeEntry],
    message: str = "",
) -> PanelSendResult:
    """
    Lead confirms the viewed user's day: OMT record 'Confirmed', then notify.

    Raises:
        ActionNotAllowedError, NothingToSendError
    """
    panel = PanelType(panel_type)
    lead = permissions.is_lead(viewed, acting)
    if not lead or panel != PanelType.CONFIRMED:
        raise ActionNotAllowedError("Only a lead can confirm from the Confirmed panel")
    if not entries:
        raise NothingToSendError("No time entries for this date.")
    if not permissions.can_confirm_with_staff(lead, panel, entries):
        raise ActionNotAllowedError("Please confirm at least one task before sending.")
    result = await _record_and_notify(
        client, "confirm", EntryStatus.CONFIRMED.value, acting, viewed, panel, task_date, entries, message or ""
    )
    logger.info("panel_confirmed_with_staff", viewed=viewed.AssingedToUserId, task_date=task_date, notified=result.notified)
    return result


async def send_to_management(
    client: ListStoreClient,
    acting: Actor,
    viewed: Actor,
    panel_type,
    task_date: str,
    entries: List[TimeEntry],
    message: str,
) -> PanelSendResult:
    """
    Lead sends the approved EOD upward: OMT record 'Approved', then notify.
    Only once per date.

    Raises:
        ActionNotAllowedError, AlreadySentError, CommentRequiredError, NothingToSendError
    """
    panel = PanelType(panel_type)
    lead = permissions.is_lead(viewed, acting)
    if not lead or panel not in permissions.EOD_PANELS:
        raise ActionNotAllowedError("Only a lead can send to management from an EOD panel")
    if already_sent_to_management(parse_omt_status(viewed.OMTStatus), task_date):
        raise AlreadySentError(task_date)
    if not (message or "").strip():
        raise CommentRequiredError("Please enter a comment before sending to management.")
    if not entries:
        raise NothingToSendError("No time entries for this date.")
    if not permissions.can_send_to_management(lead, panel, entries):
        raise ActionNotAllowedError("Please submit/approve at least one task before sending to management.")
    result = await _record_and_notify(
        client, "management", EntryStatus.APPROVED.value, acting, viewed, panel, task_date, entries, message.strip()
    )
    logger.info("panel_sent_to_management", viewed=viewed.AssingedToUserId, task_date=task_date, notified=result.notified)
    return result


# ---- View ----


def build_panel_view(
    entries: List[TimeEntry],
    acting: Actor,
    viewed: Actor,
    panel_type,
    task_date: str,
    source_errors: Optional[List[SourceError]] = None,
) -> Dict[str, Any]:
    panel = PanelType(panel_type)
    lead = permissions.is_lead(viewed, acting)
    state = PanelState.from_entries(entries, panel, lead)
    records = parse_omt_status(viewed.OMTStatus)
    steps, last_completed = timeline_steps(records, task_date)
    sent = already_sent_to_management(records, task_date)
    rows = []
    for entry in entries:
        rows.append({
            "key": row_key(entry),
            "entry": entry.model_dump(exclude_unset=True),
            "locator": locator_for(entry).model_dump(),
            "allowed_actions": permissions.allowed_actions(entry.Status, panel, lead),
            "active_action": state.active_action(entry),
        })
    return {
        "date": task_date,
        "panel_type": panel.value,
        "is_lead": lead,
        "viewed_user": {"id": viewed.Id, "user_id": viewed.AssingedToUserId, "name": viewed.display_name},
        "rows": rows,
        "total_minutes": sum(e.minutes for e in entries),
        "total_tasks": len(entries),
        "timeline": {"steps": steps, "last_completed_index": last_completed},
        "already_sent_to_management": sent,
        "can_confirm_with_staff": permissions.can_confirm_with_staff(lead, panel, entries),
        "can_send_to_management": not sent and permissions.can_send_to_management(lead, panel, entries),
        "source_errors": [e.__dict__ for e in (source_errors or [])],
    }
