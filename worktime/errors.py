"""
Domain exceptions for the timesheet core.

Store and lookup failures propagate to the caller as these types; routes map
them to HTTP responses. Only the total-time propagation swallows its own
failures (see services/total_time.py).
"""
from typing import Optional


class WorktimeError(Exception):
    """Base class for all worktime errors."""

    code: str = "WORKTIME_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class StoreRequestError(WorktimeError):
    """Non-2xx response (or transport failure) from the list store."""

    code = "STORE_REQUEST_FAILED"

    def __init__(self, status_code: Optional[int], body: str = "", operation: str = "request"):
        self.status_code = status_code
        self.body = (body or "")[:200]
        self.operation = operation
        super().__init__(f"{operation} failed: {status_code} {self.body}".strip())


class ConcurrencyConflictError(StoreRequestError):
    """Conditional save kept losing to concurrent writers."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, attempts: int, operation: str = "save_row"):
        self.attempts = attempts
        super().__init__(412, f"row changed concurrently ({attempts} attempts)", operation)


class NotFoundError(WorktimeError):
    code = "NOT_FOUND"


class EntryNotFoundError(NotFoundError):
    code = "ENTRY_NOT_FOUND"

    def __init__(self, message: str = "Entry not found"):
        super().__init__(message)


class RowNotFoundError(NotFoundError):
    code = "ROW_NOT_FOUND"

    def __init__(self, row_id=None):
        self.row_id = row_id
        super().__init__("Timesheet row not found" if row_id is None else f"Timesheet row {row_id} not found")


class TaskUserNotFoundError(NotFoundError):
    code = "TASK_USER_NOT_FOUND"

    def __init__(self, lookup: str):
        self.lookup = lookup
        super().__init__(f"Task user not found: {lookup}")


class InvalidEntryReferenceError(WorktimeError):
    code = "INVALID_ENTRY_REFERENCE"

    def __init__(self, message: str = "Entry missing siteUrl, TimesheetListId, or ParentID"):
        super().__init__(message)


class CommentRequiredError(WorktimeError):
    code = "COMMENT_REQUIRED"

    def __init__(self, message: str = "A comment is required for this action"):
        super().__init__(message)


class EmptySplitError(WorktimeError):
    code = "EMPTY_SPLIT"

    def __init__(self, message: str = "Add at least one split entry"):
        super().__init__(message)


class ActionNotAllowedError(WorktimeError):
    code = "ACTION_NOT_ALLOWED"


class AlreadySentError(WorktimeError):
    code = "ALREADY_SENT"

    def __init__(self, task_date: str):
        self.task_date = task_date
        super().__init__(f"This EOD has already been sent to management for {task_date}")


class NothingToSendError(WorktimeError):
    code = "NOTHING_TO_SEND"
