import enum
import json
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..services.time_rules import minutes_to_hours, parse_task_date


class EntryStatus(str, enum.Enum):
    DRAFT = "Draft"
    SUGGESTION = "Suggestion"
    CONFIRMED = "Confirmed"
    FOR_APPROVAL = "For Approval"
    APPROVED = "Approved"
    QUESTION = "Question"
    REJECTED = "Rejected"


class PanelType(str, enum.Enum):
    DRAFT = "Draft"
    SUGGESTION = "Suggestion"
    CONFIRMED = "Confirmed"
    FOR_APPROVAL = "For Approval"
    APPROVED = "Approved"


def _coerce_int(value):
    """Stored numbers may arrive as numbers, numeric strings or junk; junk reads as None."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(round(float(value if isinstance(value, float) else str(value).strip())))
    except (TypeError, ValueError, OverflowError):
        return None


def _coerce_float(value):
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _coerce_text(value):
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _coerce_author_id(value):
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float):
        return _coerce_int(value)
    if isinstance(value, (int, str)) or value is None:
        return value
    return _coerce_text(value)


def json_list(value) -> list:
    """Decode a list that may arrive JSON-encoded; anything malformed is empty."""
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    if isinstance(value, dict) and isinstance(value.get("results"), list):
        return value["results"]
    return []


class EntryComment(BaseModel):
    model_config = ConfigDict(extra="allow")

    Id: Optional[int] = None
    text: Optional[str] = None
    date: Optional[str] = None
    AuthorName: Optional[str] = None
    AuthorImage: Optional[str] = None
    AuthorId: Optional[Union[int, str]] = None

    @field_validator("Id", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _coerce_int(value)

    @field_validator("text", "date", "AuthorName", "AuthorImage", mode="before")
    @classmethod
    def coerce_text(cls, value):
        return _coerce_text(value)

    @field_validator("AuthorId", mode="before")
    @classmethod
    def coerce_author(cls, value):
        return _coerce_author_id(value)


class TimeHistoryRecord(BaseModel):
    """One audit snapshot on an entry: a status and/or duration at a point in time."""

    model_config = ConfigDict(extra="allow")

    Id: Optional[int] = None
    Status: Optional[str] = None
    TaskTimeInMin: Optional[int] = None
    TaskTime: Optional[float] = None
    date: Optional[str] = None
    AuthorName: Optional[str] = None
    AuthorImage: Optional[str] = None
    AuthorId: Optional[Union[int, str]] = None

    @field_validator("Id", "TaskTimeInMin", mode="before")
    @classmethod
    def coerce_ints(cls, value):
        return _coerce_int(value)

    @field_validator("TaskTime", mode="before")
    @classmethod
    def coerce_hours(cls, value):
        return _coerce_float(value)

    @field_validator("Status", "date", "AuthorName", "AuthorImage", mode="before")
    @classmethod
    def coerce_text(cls, value):
        return _coerce_text(value)

    @field_validator("AuthorId", mode="before")
    @classmethod
    def coerce_author(cls, value):
        return _coerce_author_id(value)


class TimeEntry(BaseModel):
    """
    One logged unit of work as stored inside a timesheet row's entry array.
    Unknown store fields are carried through untouched.
    """

    model_config = ConfigDict(extra="allow")

    ID: Optional[int] = None
    Id: Optional[int] = None
    UniqueId: Optional[str] = None
    AuthorId: Optional[Union[int, str]] = None
    AuthorName: Optional[str] = None
    AuthorImage: Optional[str] = None
    TaskDate: Optional[str] = None
    TaskTime: Optional[float] = None
    TaskTimeInMin: Optional[int] = None
    Status: Optional[str] = None
    Description: Optional[str] = None
    Comments: List[EntryComment] = Field(default_factory=list)
    TimeHistory: List[TimeHistoryRecord] = Field(default_factory=list)
    ParentID: Optional[int] = None
    MainParentId: Optional[int] = None
    CategoryId: Optional[int] = None
    WorkingDate: Optional[str] = None

    @field_validator(
        "ID", "Id", "TaskTimeInMin", "ParentID", "MainParentId", "CategoryId", mode="before"
    )
    @classmethod
    def coerce_ints(cls, value):
        return _coerce_int(value)

    @field_validator("TaskTime", mode="before")
    @classmethod
    def coerce_hours(cls, value):
        return _coerce_float(value)

    @field_validator(
        "UniqueId", "AuthorName", "AuthorImage", "TaskDate", "Status", "Description", "WorkingDate", mode="before"
    )
    @classmethod
    def coerce_text(cls, value):
        return _coerce_text(value)

    @field_validator("AuthorId", mode="before")
    @classmethod
    def coerce_author(cls, value):
        return _coerce_author_id(value)

    @field_validator("Comments", "TimeHistory", mode="before")
    @classmethod
    def decode_lists(cls, value):
        return [item for item in json_list(value) if isinstance(item, (dict, BaseModel))]

    @property
    def identity(self) -> Optional[int]:
        return self.ID if self.ID is not None else self.Id

    @property
    def minutes(self) -> int:
        return int(self.TaskTimeInMin or 0)

    def set_minutes(self, minutes: int) -> None:
        self.TaskTimeInMin = int(minutes)
        self.TaskTime = minutes_to_hours(minutes)


class OMTStatusRecord(BaseModel):
    """Per-user panel audit record kept on the viewed user's profile."""

    model_config = ConfigDict(extra="allow")

    Id: Optional[int] = None
    AuthorName: Optional[str] = None
    AuthorId: Optional[Union[int, str]] = None
    AuthorImage: Optional[str] = None
    Status: Optional[str] = None
    ActionDate: Optional[str] = None
    comment: Optional[str] = None
    TaskDate: Optional[str] = None

    @field_validator("Id", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _coerce_int(value)

    @field_validator("AuthorName", "AuthorImage", "Status", "ActionDate", "comment", "TaskDate", mode="before")
    @classmethod
    def coerce_text(cls, value):
        return _coerce_text(value)

    @field_validator("AuthorId", mode="before")
    @classmethod
    def coerce_author(cls, value):
        return _coerce_author_id(value)


class Actor(BaseModel):
    """A Task Users profile row: the acting user or the user being viewed."""

    model_config = ConfigDict(extra="allow")

    Id: Optional[int] = None
    AssingedToUserId: Optional[Union[int, str]] = None
    Title: Optional[str] = None
    Email: Optional[str] = None
    AuthorImage: Optional[str] = None
    OMTStatus: Optional[Any] = None

    @property
    def author_id(self):
        return self.AssingedToUserId

    @property
    def display_name(self) -> str:
        return self.Title or ""


# ---- Request bodies ----


def _check_task_date(value: str) -> str:
    if parse_task_date(value) is None:
        raise ValueError("date must be DD/MM/YYYY")
    return value.strip()


class TaskRef(BaseModel):
    list_id: str
    task_id: int
    site_url: Optional[str] = None
    site_type: Optional[str] = None
    title: Optional[str] = None


class RowRef(BaseModel):
    site_url: str
    list_id: str
    row_id: int
    category_id: Optional[int] = None


class EntryLocator(BaseModel):
    site_url: str
    list_id: str
    parent_id: int
    id: Optional[int] = None
    unique_id: Optional[str] = None
    author_id: Optional[Union[int, str]] = None
    task_date: Optional[str] = None
    task: Optional[TaskRef] = None

    def probe(self) -> TimeEntry:
        return TimeEntry(
            ID=self.id,
            UniqueId=self.unique_id,
            AuthorId=self.author_id,
            TaskDate=self.task_date,
            ParentID=self.parent_id,
        )


class StatusChange(BaseModel):
    entry: EntryLocator
    status: EntryStatus
    panel_type: PanelType = PanelType.CONFIRMED
    comment: Optional[str] = None


class TimeChange(BaseModel):
    entry: EntryLocator
    minutes: int = Field(..., ge=0, le=24 * 60)


class DescriptionChange(BaseModel):
    entry: EntryLocator
    description: str


class CommentCreate(BaseModel):
    entry: EntryLocator
    text: str = Field(..., min_length=1)
    status: Optional[EntryStatus] = None


class PostponeRequest(BaseModel):
    entry: EntryLocator
    new_date: str
    minutes: int = Field(..., ge=0, le=24 * 60)
    description: str = ""

    @field_validator("new_date")
    @classmethod
    def check_date(cls, value):
        return _check_task_date(value)


class SplitItem(BaseModel):
    date: str
    minutes: int = Field(..., ge=0, le=24 * 60)

    @field_validator("date")
    @classmethod
    def check_date(cls, value):
        return _check_task_date(value)


class SplitRequest(BaseModel):
    entry: EntryLocator
    items: List[SplitItem]
    description: str = ""


class NewEntryItem(BaseModel):
    date: str
    minutes: int = Field(..., ge=0, le=24 * 60)
    description: str = ""

    @field_validator("date")
    @classmethod
    def check_date(cls, value):
        return _check_task_date(value)


class EntriesCreate(BaseModel):
    row: RowRef
    items: List[NewEntryItem] = Field(..., min_length=1)
    task: Optional[TaskRef] = None
    created_from: str = "Mobile"


class EntryDelete(BaseModel):
    row: RowRef
    entry_id: Union[int, str]
    task: Optional[TaskRef] = None


class PanelSend(BaseModel):
    date: str
    user_id: Optional[int] = None
    panel_type: PanelType
    message: str = ""

    @field_validator("date")
    @classmethod
    def check_date(cls, value):
        return _check_task_date(value)


class AuditLogOut(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    action: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    source: Optional[str] = None
    changes: Optional[Any] = None
    context: Optional[Any] = None
    timestamp_utc: str
    verified: bool = False

    @classmethod
    def from_log(cls, log, verified: bool = False) -> "AuditLogOut":
        return cls(
            id=str(log.id),
            entity_type=log.entity_type,
            entity_id=log.entity_id,
            action=log.action,
            actor_id=log.actor_id,
            actor_role=log.actor_role,
            source=log.source,
            changes=log.changes_json,
            context=log.context,
            timestamp_utc=log.timestamp_utc.isoformat(),
            verified=verified,
        )
