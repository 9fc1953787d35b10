from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..auth.security import get_current_actor, get_store_client
from ..db import get_db
from ..errors import (
    ActionNotAllowedError,
    AlreadySentError,
    ConcurrencyConflictError,
    NotFoundError,
    StoreRequestError,
    WorktimeError,
)
from ..schemas.timesheets import (
    Actor,
    AuditLogOut,
    CommentCreate,
    DescriptionChange,
    EntriesCreate,
    EntryDelete,
    EntryLocator,
    PanelSend,
    PanelType,
    PostponeRequest,
    SplitRequest,
    StatusChange,
    TimeChange,
    TimeEntry,
)
from ..services import confirmation_panel, postpone_split, status_machine, total_time
from ..services.audit import create_audit_log, entry_entity_id, get_audit_logs, verify_integrity
from ..services.list_store import ListStoreClient
from ..services.task_users import get_user_by_assigned_id
from ..services.time_rules import parse_task_date


router = APIRouter(prefix="/timesheets", tags=["timesheets"])


def _http_error(e: WorktimeError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ConcurrencyConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, StoreRequestError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(e, ActionNotAllowedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(e, AlreadySentError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail={"code": e.code, "message": e.message})


def _serialize_entry(entry: TimeEntry) -> Dict[str, Any]:
    return entry.model_dump(exclude_unset=True)


def _actor_role(actor: Actor, author_id) -> str:
    return "staff" if str(author_id) == str(actor.author_id) else "lead"


def _audit_entry(
    db: Session,
    action: str,
    actor: Actor,
    list_id: str,
    row_id: int,
    entry: TimeEntry,
    changes: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    create_audit_log(
        db,
        entity_type="time_entry",
        entity_id=entry_entity_id(list_id, row_id, entry.identity),
        action=action,
        actor_id=actor.author_id,
        actor_role=_actor_role(actor, entry.AuthorId),
        changes_json=changes,
        context=context,
    )


def _locator_context(locator: EntryLocator) -> Dict[str, Any]:
    context = {"site_url": locator.site_url, "list_id": locator.list_id, "row_id": locator.parent_id}
    if locator.task is not None:
        context["task_id"] = locator.task.task_id
    return context


def _check_date(value: str) -> str:
    if parse_task_date(value) is None:
        raise HTTPException(status_code=400, detail="date must be DD/MM/YYYY")
    return value.strip()


async def _viewed_user(client: ListStoreClient, actor: Actor, user_id) -> Actor:
    if user_id in (None, "") or str(user_id) == str(actor.author_id):
        return actor
    return await get_user_by_assigned_id(client, user_id)


@router.get("/panel")
async def get_panel(
    date: str = Query(..., description="DD/MM/YYYY"),
    panel_type: PanelType = Query(PanelType.CONFIRMED),
    user_id: Optional[int] = Query(None),
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
):
    task_date = _check_date(date)
    try:
        viewed = await _viewed_user(client, actor, user_id)
        entries, errors = await confirmation_panel.load_panel_entries(client, task_date, viewed.author_id)
    except WorktimeError as e:
        raise _http_error(e) from e
    return confirmation_panel.build_panel_view(entries, actor, viewed, panel_type, task_date, errors)


@router.post("/entries/status")
async def change_status(
    body: StatusChange,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        result = await status_machine.apply_status(
            client, body.entry, body.status, actor, panel_type=body.panel_type, comment=body.comment
        )
    except WorktimeError as e:
        raise _http_error(e) from e
    _audit_entry(
        db,
        "REVERT" if result.reverted else "STATUS",
        actor,
        body.entry.list_id,
        body.entry.parent_id,
        result.entry,
        changes={"Status": {"before": result.previous, "after": result.status}},
        context={**_locator_context(body.entry), "panel_type": body.panel_type.value},
    )
    return {
        "previous": result.previous,
        "status": result.status,
        "reverted": result.reverted,
        "entry": _serialize_entry(result.entry),
    }


@router.post("/entries/time")
async def change_time(
    body: TimeChange,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        entry, delta = await status_machine.update_entry_time(client, body.entry, body.minutes, actor, db=db)
    except WorktimeError as e:
        raise _http_error(e) from e
    _audit_entry(
        db, "TIME", actor, body.entry.list_id, body.entry.parent_id, entry,
        changes={"TaskTimeInMin": {"before": body.minutes - delta, "after": body.minutes}},
        context=_locator_context(body.entry),
    )
    return {"entry": _serialize_entry(entry), "delta": delta}


@router.post("/entries/description")
async def change_description(
    body: DescriptionChange,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        entry = await status_machine.update_entry_description(client, body.entry, body.description, actor)
    except WorktimeError as e:
        raise _http_error(e) from e
    _audit_entry(db, "DESCRIPTION", actor, body.entry.list_id, body.entry.parent_id, entry, context=_locator_context(body.entry))
    return {"entry": _serialize_entry(entry)}


@router.post("/entries/comments")
async def add_comment(
    body: CommentCreate,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        entry = await status_machine.add_entry_comment(client, body.entry, body.text, actor, status=body.status)
    except WorktimeError as e:
        raise _http_error(e) from e
    _audit_entry(
        db, "COMMENT", actor, body.entry.list_id, body.entry.parent_id, entry,
        changes={"Status": entry.Status} if body.status else None,
        context=_locator_context(body.entry),
    )
    return {"entry": _serialize_entry(entry)}


@router.post("/entries/postpone")
async def postpone(
    body: PostponeRequest,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        entry, delta = await postpone_split.postpone_entry(
            client, body.entry, body.new_date, body.minutes, body.description, actor, db=db
        )
    except WorktimeError as e:
        raise _http_error(e) from e
    _audit_entry(
        db, "POSTPONE", actor, body.entry.list_id, body.entry.parent_id, entry,
        changes={"from": {"id": body.entry.id, "date": body.entry.task_date}, "to": {"date": body.new_date}, "delta": delta},
        context=_locator_context(body.entry),
    )
    return {"entry": _serialize_entry(entry), "delta": delta}


@router.post("/entries/split")
async def split(
    body: SplitRequest,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        legs, total = await postpone_split.split_entry(client, body.entry, body.items, body.description, actor, db=db)
    except WorktimeError as e:
        raise _http_error(e) from e
    for leg in legs:
        _audit_entry(
            db, "SPLIT", actor, body.entry.list_id, body.entry.parent_id, leg,
            changes={"source_id": body.entry.id, "minutes": leg.minutes},
            context=_locator_context(body.entry),
        )
    return {"entries": [_serialize_entry(e) for e in legs], "delta": total}


@router.post("/entries", status_code=status.HTTP_201_CREATED)
async def create_entries(
    body: EntriesCreate,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        created, total = await postpone_split.add_entries(
            client, body.row, body.items, actor, task=body.task, created_from=body.created_from, db=db
        )
    except WorktimeError as e:
        raise _http_error(e) from e
    for entry in created:
        _audit_entry(
            db, "CREATE", actor, body.row.list_id, body.row.row_id, entry,
            changes={"minutes": entry.minutes, "date": entry.TaskDate},
            context={"site_url": body.row.site_url, "list_id": body.row.list_id, "row_id": body.row.row_id},
        )
    return {"entries": [_serialize_entry(e) for e in created], "delta": total}


@router.delete("/entries")
async def remove_entry(
    body: EntryDelete,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        removed = await postpone_split.delete_entry(client, body.row, body.entry_id, task=body.task, db=db)
    except WorktimeError as e:
        raise _http_error(e) from e
    _audit_entry(
        db, "DELETE", actor, body.row.list_id, body.row.row_id, removed,
        changes={"before": _serialize_entry(removed)},
        context={"site_url": body.row.site_url, "list_id": body.row.list_id, "row_id": body.row.row_id},
    )
    return {"deleted": True, "entry": _serialize_entry(removed), "delta": -removed.minutes}


async def _panel_send(body: PanelSend, client: ListStoreClient, actor: Actor, db: Session, management: bool):
    try:
        viewed = await _viewed_user(client, actor, body.user_id)
        entries, _ = await confirmation_panel.load_panel_entries(client, body.date, viewed.author_id)
        send = confirmation_panel.send_to_management if management else confirmation_panel.confirm_with_staff
        result = await send(client, actor, viewed, body.panel_type, body.date, entries, body.message)
    except WorktimeError as e:
        raise _http_error(e) from e
    create_audit_log(
        db,
        entity_type="omt_status",
        entity_id=str(viewed.Id),
        action="SEND" if management else "CONFIRM",
        actor_id=actor.author_id,
        actor_role="lead",
        changes_json={"record": result.record.model_dump(exclude_none=True)},
        context={"task_date": body.date, "panel_type": body.panel_type.value, "entries": len(entries)},
    )
    return {
        "record": result.record.model_dump(exclude_none=True),
        "notified": result.notified,
        "total_minutes": sum(e.minutes for e in entries),
        "total_tasks": len(entries),
    }


@router.post("/panel/confirm-with-staff")
async def confirm_with_staff(
    body: PanelSend,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return await _panel_send(body, client, actor, db, management=False)


@router.post("/panel/send-to-management")
async def send_to_management(
    body: PanelSend,
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return await _panel_send(body, client, actor, db, management=True)


@router.post("/outbox/reconcile")
async def reconcile_outbox(
    client: ListStoreClient = Depends(get_store_client),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return await total_time.reconcile_pending(client, db)


@router.get("/audit", response_model=List[AuditLogOut])
def list_audit_logs(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    logs = get_audit_logs(db, entity_type=entity_type, entity_id=entity_id, actor_id=actor_id, limit=limit, offset=offset)
    return [AuditLogOut.from_log(log, verified=verify_integrity(log)) for log in logs]
