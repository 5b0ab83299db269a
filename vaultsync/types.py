"""
Data types for the sharded content store.

Records are small searchable metadata entities. Each one owns at most one
content blob, addressed by a ContentRef that may move between nodes when
the backend migrates it.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from .errors import ErrorKind


T = TypeVar("T")

MAX_ID_LENGTH = 1024

# Null bytes, control chars and DEL are never valid in record IDs
_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f]')

# Committed file previews are served from the Drive image CDN
PREVIEW_URL_TEMPLATE = "https://lh3.googleusercontent.com/d/{file_id}"


def utc_now() -> str:
    """Current UTC timestamp in ISO format, as the backend stores it."""
    return datetime.now(timezone.utc).isoformat()


def validate_id(id: str) -> None:
    """Validate a record ID: length and no control characters."""
    if not id or len(id) > MAX_ID_LENGTH:
        raise ValueError(f"ID must be 1-{MAX_ID_LENGTH} characters")
    if _ID_BLOCKED_RE.search(id):
        raise ValueError(f"ID contains invalid characters: {id!r}")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a data-access call.

    A failed Result always has ``error`` set; a successful one may still
    carry ``value=None`` (e.g. a record that has no blob yet), so callers
    can tell "failed" apart from "legitimately empty".
    """
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "") -> "Result[T]":
        return cls(error=kind, message=message)

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class ContentRef:
    """
    Pointer to a content blob.

    An empty ``content_id`` means no blob has been written yet. A missing
    ``node_url`` means the blob lives on the default node.
    """
    content_id: str = ""
    node_url: Optional[str] = None

    def __post_init__(self):
        # Normalize "" to None so structural equality ignores the spelling
        if self.node_url == "":
            object.__setattr__(self, "node_url", None)

    @property
    def is_empty(self) -> bool:
        return not self.content_id

    def endpoint(self, default_node: str) -> str:
        """The node URL to talk to for this blob."""
        return self.node_url or default_node


class AttachmentState(Enum):
    """Lifecycle of a vault entry."""
    PENDING = "pending"
    COMMITTED = "committed"


@dataclass(frozen=True)
class AttachmentRef:
    """
    A binary file (or external link) referenced from a content blob.

    The blob owns the reference; the bytes live on ``node_url``, which
    may differ from the blob's own node. Pending entries exist only on
    the client while their upload is in flight and are identified by
    ``temp_id``; they are never written to the backend.
    """
    label: str
    type: str = "FILE"
    file_id: str = ""
    node_url: Optional[str] = None
    mime_type: str = ""
    url: str = ""
    state: AttachmentState = AttachmentState.COMMITTED
    temp_id: Optional[str] = None
    preview_url: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.state is AttachmentState.PENDING

    @property
    def is_link(self) -> bool:
        return self.type == "LINK"

    def display_url(self) -> Optional[str]:
        """URL to render for this entry: local preview while pending."""
        if self.is_link:
            return self.url
        if self.pending:
            return self.preview_url
        return PREVIEW_URL_TEMPLATE.format(file_id=self.file_id)

    def to_wire(self) -> dict[str, Any]:
        """Vault entry as stored inside the content blob."""
        if self.pending:
            raise ValueError(f"Pending attachment {self.temp_id!r} cannot be serialized")
        if self.is_link:
            return {"type": "LINK", "url": self.url, "label": self.label}
        entry: dict[str, Any] = {
            "type": self.type,
            "fileId": self.file_id,
            "nodeUrl": self.node_url,
            "label": self.label,
            "mimeType": self.mime_type,
        }
        return entry

    @classmethod
    def from_wire(cls, entry: dict[str, Any]) -> "AttachmentRef":
        if entry.get("type") == "LINK":
            return cls(label=entry.get("label", ""), type="LINK", url=entry.get("url", ""))
        return cls(
            label=entry.get("label", ""),
            type=entry.get("type", "FILE"),
            file_id=entry.get("fileId", ""),
            node_url=entry.get("nodeUrl") or None,
            mime_type=entry.get("mimeType", ""),
        )


@dataclass(frozen=True)
class Record:
    """
    A searchable metadata record.

    ``fields`` holds the record's wire fields (title, label, isFavorite,
    ...) except the content pointer, which is lifted into ``ref`` so it
    can only change through the content locator.
    """
    id: str
    entity: str
    fields: dict[str, Any] = field(default_factory=dict)
    ref: ContentRef = field(default_factory=ContentRef)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def with_fields(self, **changes: Any) -> "Record":
        """Copy with some wire fields changed."""
        return replace(self, fields={**self.fields, **changes})

    def with_ref(self, ref: ContentRef) -> "Record":
        return replace(self, ref=ref)


@dataclass(frozen=True)
class Page:
    """One page of a paginated record listing."""
    items: list[Record] = field(default_factory=list)
    total_count: int = 0


@dataclass(frozen=True)
class WriteOutcome:
    """Response of a content write: the authoritative ref for the blob."""
    ref: ContentRef
    ok: bool
    migrated: bool = False
    message: str = ""
    error: Optional[ErrorKind] = None
