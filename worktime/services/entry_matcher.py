"""
Locate one logical entry inside a row's entry array.

Entries carry two identities: the natural key (AuthorId, TaskDate, ParentID)
used by date-driven callers, and the surrogate identity (ID/Id/UniqueId)
assigned at creation. All matching between them lives here.
"""
from typing import List, Optional, Tuple

from ..schemas.timesheets import TimeEntry
from .time_rules import date_part


def _text(value) -> str:
    return "" if value is None else str(value)


def _number(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _same_date(a: TimeEntry, b: TimeEntry) -> bool:
    return _text(a.TaskDate).strip() == _text(b.TaskDate).strip()


def natural_key_matches(candidate: TimeEntry, probe: TimeEntry) -> bool:
    """AuthorId and TaskDate compared as trimmed strings, ParentID as numbers."""
    if probe.AuthorId is None or not _text(probe.TaskDate).strip() or probe.ParentID is None:
        return False
    parent = _number(candidate.ParentID)
    return (
        _text(candidate.AuthorId) == _text(probe.AuthorId)
        and _same_date(candidate, probe)
        and parent is not None
        and parent == _number(probe.ParentID)
    )


def identity_matches(candidate: TimeEntry, probe: TimeEntry) -> bool:
    probe_id = probe.identity
    if probe_id is not None and candidate.identity is not None and candidate.identity == probe_id:
        return True
    if probe_id is not None and candidate.ID is not None and candidate.Id is not None:
        if probe_id in (candidate.ID, candidate.Id):
            return True
    return bool(probe.UniqueId) and candidate.UniqueId == probe.UniqueId


def find_entry(entries: List[TimeEntry], probe: TimeEntry) -> Optional[Tuple[int, TimeEntry]]:
    """
    Find the entry the probe refers to; first match wins.

    1. natural key (AuthorId, TaskDate, ParentID)
    2. identity (ID/Id/UniqueId), plus TaskDate equality when the probe has a date
    """
    for index, candidate in enumerate(entries):
        if natural_key_matches(candidate, probe):
            return index, candidate
    has_date = bool(_text(probe.TaskDate).strip())
    for index, candidate in enumerate(entries):
        if identity_matches(candidate, probe) and (not has_date or _same_date(candidate, probe)):
            return index, candidate
    return None


def _has_identity(entry: TimeEntry) -> bool:
    return entry.identity is not None or bool(entry.UniqueId)


def same_slot(candidate: TimeEntry, original: TimeEntry) -> bool:
    """
    Identity + author + date. Used when removing a moved entry so a sibling
    sharing the id under a different date survives. Two entries that both
    lack ID/Id/UniqueId count as the same identity.
    """
    if _has_identity(original) or _has_identity(candidate):
        same_identity = identity_matches(candidate, original)
    else:
        same_identity = True
    return (
        same_identity
        and _text(candidate.AuthorId) == _text(original.AuthorId)
        and _same_date(candidate, original)
    )


def find_by_identity(entries: List[TimeEntry], entry_id) -> Optional[Tuple[int, TimeEntry]]:
    """Match on ID/Id (as strings) or UniqueId only."""
    wanted = _text(entry_id)
    for index, candidate in enumerate(entries):
        if _text(candidate.identity) == wanted or (candidate.UniqueId and candidate.UniqueId == wanted):
            return index, candidate
    return None


def entries_on_date(entries: List[TimeEntry], task_date: str) -> List[TimeEntry]:
    day = date_part(task_date)
    return [e for e in entries if date_part(e.TaskDate) == day]


def next_entry_id(entries: List[TimeEntry]) -> int:
    """max(ID) + 1 within the row; 1 for an empty row"""
    ids = [e.identity for e in entries if e.identity is not None]
    return (max(ids) if ids else 0) + 1
