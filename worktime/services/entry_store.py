"""
Entry store accessor.

A timesheet row keeps its entries as one JSON-encoded text field
(`AdditionalTimeEntry`). This module is the only place that decodes or
encodes that field; everything above it works with TimeEntry models.
Every write is a whole-array MERGE of the row.
"""
import json
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar

import structlog

from ..config import settings
from ..errors import ConcurrencyConflictError, InvalidEntryReferenceError, RowNotFoundError, StoreRequestError
from ..schemas.timesheets import TimeEntry, json_list
from .list_store import ListStoreClient

logger = structlog.get_logger(__name__)

ENTRIES_FIELD = "AdditionalTimeEntry"

T = TypeVar("T")


@dataclass(frozen=True)
class RowAddress:
    site_url: str
    list_id: str
    row_id: int

    def __post_init__(self):
        if not self.site_url or not self.list_id or self.row_id is None:
            raise InvalidEntryReferenceError()


@dataclass
class LoadedRow:
    address: RowAddress
    entries: List[TimeEntry]
    type_tag: str
    etag: Optional[str] = None
    raw: dict = field(default_factory=dict)


def parse_entries(raw) -> List[TimeEntry]:
    """Decode the stored entry array; malformed or missing values decode to []."""
    entries = []
    for item in json_list(raw):
        if isinstance(item, dict):
            entries.append(TimeEntry.model_validate(item))
    return entries


def entry_to_store(entry: TimeEntry) -> dict:
    data = entry.model_dump(exclude_unset=True)
    # TimeHistory is itself a JSON string inside each stored entry
    if "TimeHistory" in data:
        data["TimeHistory"] = json.dumps(data["TimeHistory"])
    return data


def serialize_entries(entries: List[TimeEntry]) -> str:
    return json.dumps([entry_to_store(e) for e in entries])


async def load_row(client: ListStoreClient, site_url: str, list_id: str, row_id: int) -> LoadedRow:
    """
    Read one row's entry array together with the type tag needed to write it back.
    """
    address = RowAddress(site_url, list_id, row_id)
    try:
        data = await client.get(
            client.items_url(site_url, list_id, row_id),
            params={"$select": f"Id,{ENTRIES_FIELD}"},
            operation="load_row",
        )
    except StoreRequestError as e:
        if e.status_code == 404:
            raise RowNotFoundError(row_id) from e
        raise
    metadata = data.get("__metadata") or {}
    type_tag = metadata.get("type") or await client.list_entity_type(site_url, list_id)
    return LoadedRow(
        address=address,
        entries=parse_entries(data.get(ENTRIES_FIELD)),
        type_tag=type_tag,
        etag=metadata.get("etag"),
        raw=data,
    )


async def save_row(
    client: ListStoreClient,
    site_url: str,
    list_id: str,
    row_id: int,
    entries: List[TimeEntry],
    type_tag: str,
    etag: Optional[str] = None,
) -> None:
    """
    Overwrite the row's whole entry array. Without an ETag this is an
    unconditional last-writer-wins MERGE.
    """
    await client.merge(
        client.items_url(site_url, list_id, row_id),
        {ENTRIES_FIELD: serialize_entries(entries), "__metadata": {"type": type_tag}},
        etag=etag,
        operation="save_row",
    )


async def mutate_row(
    client: ListStoreClient,
    address: RowAddress,
    mutator: Callable[[LoadedRow], T],
) -> T:
    """
    Load the row, let `mutator` change `row.entries` in memory, save it back.

    The mutator runs against freshly loaded data on every attempt and returns
    the operation's result. With optimistic concurrency enabled the save is
    conditional on the loaded ETag and the cycle is retried on 412.
    """
    attempts = max(1, settings.concurrency_max_attempts) if settings.optimistic_concurrency else 1
    for attempt in range(1, attempts + 1):
        row = await load_row(client, address.site_url, address.list_id, address.row_id)
        result = mutator(row)
        etag = row.etag if settings.optimistic_concurrency else None
        try:
            await save_row(client, address.site_url, address.list_id, address.row_id, row.entries, row.type_tag, etag=etag)
        except StoreRequestError as e:
            if e.status_code == 412 and settings.optimistic_concurrency:
                logger.info("row_save_conflict", row_id=address.row_id, attempt=attempt)
                continue
            raise
        return result
    raise ConcurrencyConflictError(attempts)

