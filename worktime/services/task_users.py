"""
Task Users profile list: user lookup and the per-user OMTStatus history.
"""
import json
from typing import List

import structlog

from ..config import settings
from ..errors import TaskUserNotFoundError
from ..schemas.timesheets import Actor, OMTStatusRecord, json_list
from .list_store import ListStoreClient
from .time_rules import date_part

logger = structlog.get_logger(__name__)

USER_FIELDS = "Id,Title,Email,AssingedToUserId,OMTStatus,Item_x0020_Cover,IsActive"


def _odata_literal(value: str) -> str:
    return str(value).replace("'", "''")


def actor_from_item(item: dict) -> Actor:
    cover = item.get("Item_x0020_Cover")
    image = cover.get("Url") if isinstance(cover, dict) else None
    data = {k: v for k, v in item.items() if k not in ("__metadata", "Item_x0020_Cover")}
    return Actor.model_validate({**data, "AuthorImage": image or item.get("AuthorImage")})


async def _find_user(client: ListStoreClient, filter_expr: str, lookup: str) -> Actor:
    results = await client.get_results(
        client.items_by_title_url(settings.task_user_site, settings.task_user_list),
        params={"$select": USER_FIELDS, "$filter": filter_expr, "$top": "1"},
        operation="find_task_user",
    )
    if not results:
        raise TaskUserNotFoundError(lookup)
    return actor_from_item(results[0])


async def get_user_by_email(client: ListStoreClient, email: str) -> Actor:
    return await _find_user(client, f"Email eq '{_odata_literal(email)}'", email)


async def get_user_by_assigned_id(client: ListStoreClient, user_id) -> Actor:
    return await _find_user(client, f"AssingedToUserId eq {int(user_id)}", str(user_id))


def parse_omt_status(raw) -> List[OMTStatusRecord]:
    """Decode a profile's OMTStatus; malformed values decode to []."""
    records = []
    for item in json_list(raw):
        if isinstance(item, OMTStatusRecord):
            records.append(item)
        elif isinstance(item, dict):
            records.append(OMTStatusRecord.model_validate(item))
    return records


def records_for_date(records: List[OMTStatusRecord], task_date: str) -> List[OMTStatusRecord]:
    day = date_part(task_date)
    return [r for r in records if r.Status and r.TaskDate and date_part(r.TaskDate) == day]


async def append_omt_status(client: ListStoreClient, profile_id: int, record: OMTStatusRecord) -> List[OMTStatusRecord]:
    """
    Read the profile's OMTStatus, append `record` with the next Id, MERGE it back.

    Returns:
        The full updated history
    """
    url = client.items_by_title_url(settings.task_user_site, settings.task_user_list, profile_id)
    data = await client.get(url, params={"$select": "Id,OMTStatus"}, operation="load_omt_status")
    type_tag = (data.get("__metadata") or {}).get("type") or settings.task_user_entity_type
    history = parse_omt_status(data.get("OMTStatus"))
    ids = [r.Id for r in history if r.Id is not None]
    record.Id = (max(ids) if ids else 0) + 1
    history.append(record)
    await client.merge(
        url,
        {
            "__metadata": {"type": type_tag},
            "OMTStatus": json.dumps([r.model_dump(exclude_unset=True) for r in history]),
        },
        operation="save_omt_status",
    )
    logger.info("omt_status_appended", profile_id=profile_id, status=record.Status, task_date=record.TaskDate)
    return history
