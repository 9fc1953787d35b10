"""
Outbound panel notifications.
Snapshot payloads for "confirm with staff" and "send to management", posted
as JSON to the configured workflow webhook.
"""
from typing import Optional, Dict, Any, List

import structlog

from ..config import settings
from ..schemas.timesheets import Actor, TimeEntry
from .list_store import ListStoreClient
from .time_rules import now_local, now_stamp, parse_task_date

logger = structlog.get_logger(__name__)

PRETTY_DATE = "%d %b %Y"
LONG_DATE = "%A %d %b %Y"


def _extra(entry: TimeEntry, key: str, default=None):
    return (entry.model_extra or {}).get(key, default)


def task_rows(entries: List[TimeEntry]) -> List[Dict[str, Any]]:
    rows = []
    for entry in entries:
        task = _extra(entry, "TaskItem") or {}
        rows.append({
            "Site": task.get("siteType") or "",
            "TaskID": task.get("Id") or "",
            "Title": task.get("Title") or "",
            "WTTime": entry.minutes,
            "Description": entry.Description or "",
        })
    return rows


def _user_details(user: Actor) -> Dict[str, Any]:
    return user.model_dump(exclude={"OMTStatus"}, exclude_none=True)


def build_notification_payload(
    kind: str,
    entries: List[TimeEntry],
    viewed: Actor,
    acting: Actor,
    panel_type: str,
    task_date: str,
    message: str,
) -> Dict[str, Any]:
    """
    Build the workflow payload for a panel-level send.

    Args:
        kind: "confirm" (lead confirms with staff) or "management" (EOD approved)
        entries: The date's entries for the viewed user
        viewed: User whose timesheet is shown
        acting: Lead sending the notification
        panel_type: Panel the send comes from
        task_date: DD/MM/YYYY
        message: Lead's comment

    Returns:
        JSON-serializable payload
    """
    day = parse_task_date(task_date)
    pretty = day.strftime(PRETTY_DATE) if day else task_date
    long_date = day.strftime(LONG_DATE) if day else task_date
    approver = acting.display_name
    total_minutes = sum(e.minutes for e in entries)

    if kind == "management":
        default_msg = (
            f"{approver or 'Approver'} EOD submitted for {pretty} has been approved. "
            f"Please have a look for any questions/rejections."
        )
        default_send = f"Your EOD for the date - {pretty} has been Approved by {approver}. Review it for any questions."
        heading = {
            "Comment": message,
            "Type": "Approved",
            "Subject": f"Approved Timesheet Submission - {viewed.display_name} for the period {long_date}",
            "Text": message,
            "headerName": "Management Team",
            "regardName": approver,
        }
    else:
        default_msg = (
            f"{approver or 'Approver'} has confirmed your suggested working today, "
            f"go ahead with confirmed time entries and coordinate for any questions/rejections."
        )
        default_send = f"Your WT timesheet for date - {pretty} has been confirmed by {approver}."
        heading = {
            "Comment": message,
            "Type": panel_type,
            "Subject": f"WT Timesheet Confirmation - {viewed.display_name} for the period {long_date}",
            "Text": message,
            "headerName": viewed.display_name,
            "regardName": approver,
        }

    payload = {
        "finalHtmlTable": "",
        "DefaultMsg": default_msg,
        "DefaultMsgSend": default_send,
        "senderNames": approver,
        "conformationTYpe": heading,
        "approverNames": approver,
        "TimesheetPanelType": panel_type,
        "Userdetails": _user_details(viewed),
        "taskRows": task_rows(entries),
        "TotalTime": total_minutes,
        "TotalTasks": len(entries),
        "TaskSiteUrl": _extra(entries[0], "siteUrl", "") if entries else "",
        "Date": now_local().strftime(PRETTY_DATE),
        "timestamp": now_stamp(),
    }
    if kind == "management":
        payload["TaskDate"] = entries[0].TaskDate if entries else task_date
    return payload


async def post_notification(client: ListStoreClient, payload: Dict[str, Any], url: Optional[str] = None) -> bool:
    """
    POST a payload to the notification webhook.

    Returns:
        False when no webhook is configured, True once the webhook accepted it

    Raises:
        StoreRequestError on a non-2xx response
    """
    target = url or settings.notification_webhook_url
    if not target:
        logger.warning("notification_webhook_not_configured")
        return False
    await client.post_json(target, payload, operation="post_notification")
    logger.info("notification_sent", tasks=payload.get("TotalTasks"), total=payload.get("TotalTime"))
    return True
