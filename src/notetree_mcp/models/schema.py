"""Data models for the NoteTree MCP server."""

import datetime
import os
import re
import threading
from dataclasses import dataclass
from datetime import timezone
from enum import Enum
from fractions import Fraction
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from notetree_mcp.models.order_keys import OrderKey, parse_order_key

# Node and project IDs: alphanumeric, underscores, hyphens, T separator
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-T]+$")


def validate_safe_id(value: str, field_name: str = "value") -> str:
    """Validate that an identifier only uses the safe character set.

    Raises:
        ValueError: If the value is empty or contains other characters
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if not SAFE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores, hyphens, and 'T' are allowed."
        )
    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Treat naive datetimes read back from SQLite as UTC."""
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based ID that is unique across threads and processes.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc": date, ``T``,
        time, 6-digit microseconds and a 6-digit counter. The counter is
        bumped when several IDs share a microsecond (import phase 1 creates
        nodes from a thread pool) and re-seeded from the PID otherwise.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        return f"{now.strftime('%Y%m%dT%H%M%S')}{now.microsecond:06d}{_counter:06d}"


class PlacementKind(str, Enum):
    """Where a moved node lands relative to an anchor node."""

    BEFORE = "before"  # Sibling directly before the anchor
    AFTER = "after"  # Sibling directly after the anchor
    APPEND_CHILD = "append_child"  # Last child of the anchor
    PREPEND_CHILD = "prepend_child"  # First child of the anchor

    @classmethod
    def parse(cls, value: str) -> "PlacementKind":
        """Accept snake_case, camelCase and the drag UI's legacy names."""
        normalized = value.strip()
        aliases = {
            "appendChild": cls.APPEND_CHILD,
            "prependChild": cls.PREPEND_CHILD,
            "child": cls.APPEND_CHILD,
            "first-child": cls.PREPEND_CHILD,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized.lower())

    @property
    def is_child(self) -> bool:
        return self in (PlacementKind.APPEND_CHILD, PlacementKind.PREPEND_CHILD)


@dataclass(frozen=True)
class Placement:
    """A placement intent bound to its anchor.

    For ``BEFORE``/``AFTER`` the anchor is a sibling; for the child kinds it
    is the new parent, where ``None`` means the project root.
    """

    kind: PlacementKind
    anchor_id: Optional[str] = None

    @classmethod
    def before(cls, sibling_id: str) -> "Placement":
        return cls(PlacementKind.BEFORE, sibling_id)

    @classmethod
    def after(cls, sibling_id: str) -> "Placement":
        return cls(PlacementKind.AFTER, sibling_id)

    @classmethod
    def append_child(cls, parent_id: Optional[str]) -> "Placement":
        return cls(PlacementKind.APPEND_CHILD, parent_id)

    @classmethod
    def prepend_child(cls, parent_id: Optional[str]) -> "Placement":
        return cls(PlacementKind.PREPEND_CHILD, parent_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.anchor_id or 'ROOT'}"


class Project(BaseModel):
    """A project: the scope that owns one tree of nodes."""

    id: str = Field(default_factory=generate_id, description="Unique project ID")
    name: str = Field(..., description="Human-readable display name")
    is_locked: bool = Field(
        default=False, description="Locked projects refuse structural edits"
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the project was created (UTC)"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_id(v, "Project ID")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not empty."""
        if not v.strip():
            raise ValueError("Project name cannot be empty")
        return v


class Node(BaseModel):
    """A note in a project's tree.

    Only ``project_id``, ``parent_id`` and ``order`` matter to the ordering
    engine; the remaining attributes are carried through untouched.
    """

    id: str = Field(default_factory=generate_id, description="Unique ID of the node")
    project_id: str = Field(..., description="Project (scope) the node belongs to")
    parent_id: Optional[str] = Field(
        default=None, description="Parent node ID, None for a root node"
    )
    order: OrderKey = Field(
        default_factory=lambda: Fraction(0),
        description="Position among siblings (rational, see order_keys)",
    )
    content: str = Field(default="", description="Note text")
    url: Optional[str] = Field(default=None, description="Attached link")
    link_text: Optional[str] = Field(default=None, description="Display text for url")
    youtube_link: Optional[str] = Field(default=None, description="Media reference")
    time_marker: Optional[str] = Field(default=None, description="Time marker")
    is_discussion: bool = Field(default=False, description="Discussion flag")
    images: List[str] = Field(default_factory=list, description="Image references")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the node was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the node was last updated (UTC)"
    )

    model_config = {
        "validate_assignment": True,
        "extra": "forbid",
        "arbitrary_types_allowed": True,
    }

    @field_validator("id", "project_id")
    @classmethod
    def validate_ids(cls, v: str) -> str:
        return validate_safe_id(v, "ID")

    @field_validator("parent_id")
    @classmethod
    def validate_parent_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return validate_safe_id(v, "Parent ID")

    @field_validator("order", mode="before")
    @classmethod
    def validate_order(cls, v: Any) -> OrderKey:
        return parse_order_key(v)

    def sort_key(self):
        """Display order within a sibling group; ties fall back to age, then ID."""
        return (self.order, ensure_timezone_aware(self.created_at), self.id)


def _pick(raw: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _reference(value: Any, field_name: str) -> Optional[str]:
    """External IDs may arrive as strings or integers."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field_name} cannot be a boolean")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    raise ValueError(f"{field_name} must be a string or integer")


class ImportRecord(BaseModel):
    """One externally identified node from an import payload."""

    external_id: str = Field(..., description="ID in the source system")
    external_parent_id: Optional[str] = Field(
        default=None, description="Parent ID in the source system"
    )
    content: str = Field(default="")
    url: Optional[str] = None
    link_text: Optional[str] = None
    youtube_link: Optional[str] = None
    time_marker: Optional[str] = None
    is_discussion: bool = False
    images: List[str] = Field(default_factory=list)
    order_hint: Optional[OrderKey] = Field(
        default=None, description="Source ordering among siblings, if provided"
    )
    position: int = Field(default=0, description="Index in the flattened input list")

    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    @classmethod
    def from_raw(cls, raw: Any, position: int = 0) -> "ImportRecord":
        """Build a record from a source dict.

        Accepts the canonical names (``externalId``, ``externalParentId``,
        ``orderHint``), their snake_case forms, the legacy export names
        (``id``, ``parentId``, ``order``, ``position``) and the old demo
        aliases (``youtube_url``, ``url_display_text``, ``time_set``).

        Raises:
            ValueError: If the record is not an object, has no usable ID or
                carries non-text content.
        """
        if not isinstance(raw, Mapping):
            raise ValueError(f"record must be an object, got {type(raw).__name__}")

        external_id = _reference(
            _pick(raw, "externalId", "external_id", "id"), "external id"
        )
        if external_id is None:
            raise ValueError("record has no external id")

        content = raw.get("content", "")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ValueError(
                f"record {external_id}: content must be text, "
                f"got {type(content).__name__}"
            )

        order_hint = None
        raw_hint = _pick(raw, "orderHint", "order_hint", "order", "position")
        if raw_hint is not None:
            try:
                order_hint = parse_order_key(raw_hint)
            except ValueError:
                order_hint = None

        images = raw.get("images")
        is_discussion = _pick(raw, "isDiscussion", "is_discussion")

        return cls(
            external_id=external_id,
            external_parent_id=_reference(
                _pick(
                    raw,
                    "externalParentId",
                    "external_parent_id",
                    "parentId",
                    "parent_id",
                ),
                "external parent id",
            ),
            content=content,
            url=_optional_str(_pick(raw, "url")),
            link_text=_optional_str(
                _pick(raw, "linkText", "link_text", "url_display_text")
            ),
            youtube_link=_optional_str(
                _pick(raw, "youtubeLink", "youtube_link", "youtube_url")
            ),
            time_marker=_optional_str(_pick(raw, "time", "time_marker", "time_set")),
            is_discussion=is_discussion if isinstance(is_discussion, bool) else False,
            images=(
                [i for i in images if isinstance(i, str)]
                if isinstance(images, list)
                else []
            ),
            order_hint=order_hint,
            position=position,
        )

    def node_attributes(self) -> Dict[str, Any]:
        """Content and auxiliary attributes to copy onto the created node."""
        return {
            "content": self.content,
            "url": self.url,
            "link_text": self.link_text,
            "youtube_link": self.youtube_link,
            "time_marker": self.time_marker,
            "is_discussion": self.is_discussion,
            "images": list(self.images),
        }


class ImportPhase(str, Enum):
    """Lifecycle of a bulk import."""

    PENDING = "pending"
    CREATING = "creating"  # Phase 1: node creation + id remap
    RELINKING = "relinking"  # Phase 2: parent relinking
    NORMALIZING = "normalizing"  # Phase 3: reconciliation
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (
            ImportPhase.COMPLETED,
            ImportPhase.CANCELLED,
            ImportPhase.FAILED,
        )


class ImportResult(BaseModel):
    """Outcome of a bulk import."""

    import_id: str
    project_id: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    relinked: int = 0
    relink_failed: int = 0
    unresolved: int = 0  # Parent reference not in the import; left at root
    normalized_groups: int = 0
    failures: List[str] = Field(default_factory=list)
    id_map: Dict[str, str] = Field(default_factory=dict)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    def summary(self) -> str:
        state = "cancelled" if self.cancelled else "completed"
        return (
            f"Import {self.import_id} {state}: {self.succeeded}/{self.total} "
            f"records imported, {self.failed} failed, "
            f"{self.relinked} relinked ({self.relink_failed} relink failures)"
        )
