"""
Role and action eligibility for the confirmation panel.
"""
from typing import List, Optional

from ..schemas.timesheets import Actor, EntryStatus, PanelType, TimeEntry

S = EntryStatus
P = PanelType

EARLY_PANELS = (P.CONFIRMED, P.DRAFT, P.SUGGESTION)
EOD_PANELS = (P.FOR_APPROVAL, P.APPROVED)


def is_lead(viewing: Actor, acting: Actor) -> bool:
    """Anyone looking at someone else's timesheet acts as their lead."""
    return str(viewing.AssingedToUserId) != str(acting.AssingedToUserId)


def allowed_actions(status, panel_type, lead: bool) -> List[str]:
    """
    Buttons offered on one entry row, in display order.

    - Lead, early panels: Confirm (Approve once submitted), Question, Reject
    - Lead, EOD panels: Approve or Confirm, Reject, Question
    - Staff: Submit, Question, Reject
    """
    panel = PanelType(panel_type)
    if not lead:
        return [S.FOR_APPROVAL.value, S.QUESTION.value, S.REJECTED.value]
    if panel in EARLY_PANELS:
        primary = S.APPROVED if status == S.FOR_APPROVAL.value else S.CONFIRMED
        return [primary.value, S.QUESTION.value, S.REJECTED.value]
    primary = S.APPROVED if panel == P.APPROVED else S.CONFIRMED
    return [primary.value, S.REJECTED.value, S.QUESTION.value]


def initial_active_action(status, panel_type, lead: bool) -> Optional[str]:
    """Which button starts pressed for an entry, from its stored status."""
    panel = PanelType(panel_type)
    if panel == P.APPROVED:
        return S.APPROVED.value if status == S.APPROVED.value else None
    if panel == P.FOR_APPROVAL:
        if status in (S.FOR_APPROVAL.value, S.QUESTION.value, S.REJECTED.value):
            return status
        return None
    if status in (S.CONFIRMED.value, S.APPROVED.value, S.QUESTION.value, S.REJECTED.value):
        return status
    if status in (S.SUGGESTION.value, S.DRAFT.value):
        return S.CONFIRMED.value if lead else S.FOR_APPROVAL.value
    if status == S.FOR_APPROVAL.value and not lead:
        return S.FOR_APPROVAL.value
    return None


def has_confirmed_entry(entries: List[TimeEntry]) -> bool:
    return any(e.Status == S.CONFIRMED.value for e in entries)


def has_eod_entry(entries: List[TimeEntry], panel_type) -> bool:
    panel = PanelType(panel_type)
    if panel == P.APPROVED:
        return any(e.Status == S.APPROVED.value for e in entries)
    if panel == P.FOR_APPROVAL:
        return any(e.Status in (S.FOR_APPROVAL.value, S.APPROVED.value) for e in entries)
    return False


def can_confirm_with_staff(lead: bool, panel_type, entries: List[TimeEntry]) -> bool:
    return lead and PanelType(panel_type) == P.CONFIRMED and bool(entries) and has_confirmed_entry(entries)


def can_send_to_management(lead: bool, panel_type, entries: List[TimeEntry]) -> bool:
    """Role, panel and entry checks only; the already-sent guard lives with the OMT history."""
    return lead and PanelType(panel_type) in EOD_PANELS and bool(entries) and has_eod_entry(entries, panel_type)
