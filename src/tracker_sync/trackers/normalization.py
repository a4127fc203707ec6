"""Normalization helpers shared by all tracker providers.

This module holds the status vocabularies of each provider, timestamp
parsing, and a best-effort generic mapping from arbitrary issue payloads to
``NormalizedIssue`` that providers use as a base and override with their
exact field mappings.
"""

import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .public_api import IssueStatus, NormalizedIssue, Person, TrackerPayloadError

ModelT = TypeVar("ModelT", bound=BaseModel)

_OFFSET_WITHOUT_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


# =============================================================================
# Status vocabularies
# =============================================================================

# Aliases used when nothing provider-specific is known
GENERIC_STATUS_MAP: dict[str, IssueStatus] = {
    "open": IssueStatus.OPEN,
    "new": IssueStatus.OPEN,
    "todo": IssueStatus.OPEN,
    "to do": IssueStatus.OPEN,
    "backlog": IssueStatus.OPEN,
    "active": IssueStatus.OPEN,
    "reopened": IssueStatus.OPEN,
    "in_progress": IssueStatus.IN_PROGRESS,
    "in progress": IssueStatus.IN_PROGRESS,
    "inprogress": IssueStatus.IN_PROGRESS,
    "in-progress": IssueStatus.IN_PROGRESS,
    "started": IssueStatus.IN_PROGRESS,
    "in review": IssueStatus.IN_PROGRESS,
    "done": IssueStatus.DONE,
    "completed": IssueStatus.DONE,
    "complete": IssueStatus.DONE,
    "resolved": IssueStatus.DONE,
    "closed": IssueStatus.CLOSED,
    "cancelled": IssueStatus.CANCELLED,
    "canceled": IssueStatus.CANCELLED,
    "deleted": IssueStatus.CANCELLED,
    "rejected": IssueStatus.CANCELLED,
    "won't do": IssueStatus.CANCELLED,
}

# Teamwork task status values
TEAMWORK_STATUS_MAP: dict[str, IssueStatus] = {
    "new": IssueStatus.OPEN,
    "active": IssueStatus.OPEN,
    "reopened": IssueStatus.OPEN,
    "late": IssueStatus.OPEN,
    "inprogress": IssueStatus.IN_PROGRESS,
    "in-progress": IssueStatus.IN_PROGRESS,
    "completed": IssueStatus.DONE,
    "complete": IssueStatus.DONE,
    "closed": IssueStatus.CLOSED,
    "deleted": IssueStatus.CANCELLED,
    "cancelled": IssueStatus.CANCELLED,
}

TEAMWORK_NATIVE_STATUS: dict[IssueStatus, str] = {
    IssueStatus.OPEN: "new",
    IssueStatus.IN_PROGRESS: "inprogress",
    IssueStatus.DONE: "completed",
    IssueStatus.CLOSED: "closed",
    IssueStatus.CANCELLED: "deleted",
}

# Jira workflow status names (lowercased); workflows are customizable so the
# status category is used when the name is unknown
JIRA_STATUS_MAP: dict[str, IssueStatus] = {
    "to do": IssueStatus.OPEN,
    "open": IssueStatus.OPEN,
    "new": IssueStatus.OPEN,
    "backlog": IssueStatus.OPEN,
    "reopened": IssueStatus.OPEN,
    "selected for development": IssueStatus.OPEN,
    "in progress": IssueStatus.IN_PROGRESS,
    "in review": IssueStatus.IN_PROGRESS,
    "review": IssueStatus.IN_PROGRESS,
    "in development": IssueStatus.IN_PROGRESS,
    "done": IssueStatus.DONE,
    "resolved": IssueStatus.DONE,
    "closed": IssueStatus.CLOSED,
    "cancelled": IssueStatus.CANCELLED,
    "canceled": IssueStatus.CANCELLED,
    "won't do": IssueStatus.CANCELLED,
    "rejected": IssueStatus.CANCELLED,
}

JIRA_STATUS_CATEGORY_MAP: dict[str, IssueStatus] = {
    "new": IssueStatus.OPEN,
    "indeterminate": IssueStatus.IN_PROGRESS,
    "done": IssueStatus.DONE,
}

JIRA_NATIVE_STATUS: dict[IssueStatus, str] = {
    IssueStatus.OPEN: "To Do",
    IssueStatus.IN_PROGRESS: "In Progress",
    IssueStatus.DONE: "Done",
    IssueStatus.CLOSED: "Closed",
    IssueStatus.CANCELLED: "Cancelled",
}


def normalize_status(value: Any) -> IssueStatus:
    """Map free-text status to the shared vocabulary, defaulting to open."""
    if isinstance(value, IssueStatus):
        return value
    if not isinstance(value, str):
        return IssueStatus.OPEN
    return GENERIC_STATUS_MAP.get(value.strip().lower(), IssueStatus.OPEN)


def normalize_teamwork_status(value: str | None) -> IssueStatus:
    """Map a Teamwork task status to the shared vocabulary."""
    if not value:
        return IssueStatus.OPEN
    return TEAMWORK_STATUS_MAP.get(value.strip().lower(), IssueStatus.OPEN)


def to_teamwork_status(value: str) -> str:
    """Translate a caller-supplied status to Teamwork's filter vocabulary.

    Values outside the shared vocabulary are passed through unchanged.
    """
    shared = _shared_status(value)
    if shared is None:
        return value
    return TEAMWORK_NATIVE_STATUS[shared]


def normalize_jira_status(name: str | None, category_key: str | None = None) -> IssueStatus:
    """Map a Jira status name (or its category) to the shared vocabulary."""
    if name:
        status = JIRA_STATUS_MAP.get(name.strip().lower())
        if status is not None:
            return status
    if category_key:
        status = JIRA_STATUS_CATEGORY_MAP.get(category_key.strip().lower())
        if status is not None:
            return status
    return IssueStatus.OPEN


def to_jira_status(value: str) -> str:
    """Translate a caller-supplied status to a Jira status name for JQL."""
    shared = _shared_status(value)
    if shared is None:
        return value
    return JIRA_NATIVE_STATUS[shared]


def _shared_status(value: str) -> IssueStatus | None:
    lowered = value.strip().lower()
    try:
        return IssueStatus(lowered)
    except ValueError:
        pass
    # Common spellings callers use for the shared values
    aliases = {
        "new": IssueStatus.OPEN,
        "in progress": IssueStatus.IN_PROGRESS,
        "completed": IssueStatus.DONE,
        "canceled": IssueStatus.CANCELLED,
    }
    return aliases.get(lowered)


# =============================================================================
# Field helpers
# =============================================================================

def parse_timestamp(value: Any) -> datetime | None:
    """Parse provider timestamps into timezone-aware datetimes.

    Accepts datetimes, ISO 8601 strings (including ``Z`` and ``+0000``
    offsets and plain dates) and epoch seconds. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _OFFSET_WITHOUT_COLON.sub(r"\1:\2", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise TrackerPayloadError(f"Invalid timestamp {value!r}") from e
    else:
        raise TrackerPayloadError(f"Invalid timestamp {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_date(value: datetime) -> str:
    """Render a datetime as YYYY-MM-DD (UTC) for provider date filters."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date().isoformat()


def as_str(value: Any) -> str | None:
    """Stringify provider ids, which may arrive as numbers."""
    if value is None or value == "":
        return None
    return str(value)


def first_of(data: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-empty value among ``keys``."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def person_from(data: Any) -> Person | None:
    """Build a Person from the common assignee/reporter shapes."""
    if not isinstance(data, Mapping):
        return None

    person_id = first_of(data, "id", "accountId")
    if person_id is None:
        return None

    name = first_of(data, "name", "displayName")
    if name is None:
        first = first_of(data, "firstName", "first-name") or ""
        last = first_of(data, "lastName", "last-name") or ""
        name = f"{first} {last}".strip() or str(person_id)

    email = first_of(data, "email", "emailAddress", "email-address")
    return Person(id=str(person_id), name=str(name), email=email)


def label_names(values: Any) -> list[str]:
    """Flatten label/tag lists that may hold strings or ``{"name": ...}`` objects."""
    if not values:
        return []
    names = []
    for value in values:
        if isinstance(value, Mapping):
            value = value.get("name")
        if value:
            names.append(str(value))
    return names


def build_model(model: type[ModelT], **data: Any) -> ModelT:
    """Instantiate a model, reporting shape problems as payload errors."""
    try:
        return model(**data)
    except ValidationError as e:
        raise TrackerPayloadError(f"Malformed {model.__name__} payload: {e}") from e


# =============================================================================
# Generic issue normalization
# =============================================================================

def normalize_issue(raw: Any, **overrides: Any) -> NormalizedIssue:
    """
    Map an arbitrary issue payload to a NormalizedIssue.

    Field aliases are tried in order (``summary``/``subject``/``title``,
    ``created``/``createdAt``/``createdOn`` and so on). Keyword overrides
    replace the generic guesses with provider-exact values. The same payload
    always produces an equal result.

    Raises:
        TrackerPayloadError: If the payload is not an object, lacks an id or
            timestamps, or otherwise cannot form a valid issue.
    """
    if not isinstance(raw, Mapping):
        raise TrackerPayloadError(f"Issue payload must be an object, got {type(raw).__name__}")

    status = raw.get("status")
    if isinstance(status, Mapping):
        status = status.get("name")

    priority = raw.get("priority")
    if isinstance(priority, Mapping):
        priority = priority.get("name")

    description = first_of(raw, "description", "body")
    if not isinstance(description, str):
        description = None

    data: dict[str, Any] = {
        "id": first_of(raw, "id", "key"),
        "key": first_of(raw, "key", "id"),
        "title": first_of(raw, "title", "summary", "subject", "name") or "",
        "description": description,
        "status": normalize_status(status),
        "assignee": person_from(raw.get("assignee")),
        "reporter": person_from(raw.get("reporter")),
        "priority": str(priority) if priority not in (None, "") else None,
        "labels": label_names(raw.get("labels") or raw.get("tags")),
        "created_at": first_of(raw, "created", "createdAt", "createdOn"),
        "updated_at": first_of(raw, "updated", "updatedAt", "lastChangedOn"),
        "url": first_of(raw, "url", "self"),
    }
    data.update(overrides)

    if data["id"] is None:
        raise TrackerPayloadError("Issue payload has no id")
    data["id"] = str(data["id"])
    data["key"] = str(data["key"] if data["key"] is not None else data["id"])

    created_at = parse_timestamp(data["created_at"])
    updated_at = parse_timestamp(data["updated_at"])
    if created_at is None and updated_at is None:
        raise TrackerPayloadError(f"Issue {data['id']} has no created/updated timestamps")
    created_at = created_at or updated_at
    updated_at = updated_at or created_at
    # Clamp so created_at <= updated_at
    data["created_at"] = created_at
    data["updated_at"] = max(created_at, updated_at)

    return build_model(NormalizedIssue, raw=dict(raw), **data)
