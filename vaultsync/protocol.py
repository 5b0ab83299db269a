"""
Wire protocol for the node backend.

Every node exposes a single HTTP+JSON endpoint that dispatches on an
``action`` string. Requests are modelled as a small tagged union: each
request type knows its Action, its HTTP method and how to render its exact
wire payload, so field names stay compatible with the backend.

Also defines the entity schemas (which actions and field names each record
kind uses) and the interface contract between the content locator and the
record layer.
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from .types import ContentRef, Record, Result


class Action(str, Enum):
    """Fixed backend actions. Entity actions come from EntitySchema."""
    GET_FILE_CONTENT = "getFileContent"
    DELETE_REMOTE_FILES = "deleteRemoteFiles"
    SAVE_ITEM = "saveItem"
    GET_PROFILE = "getProfile"


class Method(str, Enum):
    GET = "GET"
    POST = "POST"


# ---------------------------------------------------------------------------
# Entity schemas
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntitySchema:
    """
    How one record kind is spelled on the wire.

    ``content_field``/``node_field`` name the record fields holding the
    ContentRef; both are None for entities without a content blob.
    """
    name: str
    list_action: str
    save_action: str
    delete_action: str
    content_field: Optional[str] = None
    node_field: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return self.content_field is not None

    def record_from_wire(self, item: dict[str, Any]) -> Record:
        """Lift the content pointer out of a wire item."""
        fields = dict(item)
        ref = ContentRef()
        if self.content_field:
            ref = ContentRef(
                content_id=fields.pop(self.content_field, "") or "",
                node_url=fields.pop(self.node_field, None) or None,
            )
        return Record(id=str(fields.get("id", "")), entity=self.name, fields=fields, ref=ref)

    def record_to_wire(self, record: Record) -> dict[str, Any]:
        item = dict(record.fields)
        item["id"] = record.id
        if self.content_field:
            item[self.content_field] = record.ref.content_id
            item[self.node_field] = record.ref.node_url or ""
        return item


ENTITIES: dict[str, EntitySchema] = {
    s.name: s
    for s in (
        EntitySchema("activity", "getActivities", "saveActivity", "deleteActivity",
                     "vaultJsonId", "storageNodeUrl"),
        EntitySchema("teaching", "getTeaching", "saveTeaching", "deleteTeaching",
                     "vaultJsonId", "storageNodeUrl"),
        EntitySchema("review", "getReviews", "saveReview", "deleteReview",
                     "reviewJsonId", "storageNodeUrl"),
        EntitySchema("note", "getNotes", "saveNote", "deleteNote",
                     "noteJsonId", "storageNodeUrl"),
        EntitySchema("consultation", "getConsultations", "saveConsultation",
                     "deleteConsultation", "answerJsonId", "nodeUrl"),
        EntitySchema("tracer_project", "getTracerProjects", "saveTracerProject",
                     "deleteTracerProject"),
        EntitySchema("tracer_log", "getTracerLogs", "saveTracerLog", "deleteTracerLog",
                     "logJsonId", "storageNodeUrl"),
        EntitySchema("archived_article", "getArchivedArticles", "saveArchivedArticle",
                     "deleteArchivedArticle"),
        EntitySchema("colleague", "getColleagues", "saveColleague", "deleteColleague"),
    )
}


def get_schema(entity: str) -> EntitySchema:
    try:
        return ENTITIES[entity]
    except KeyError:
        raise ValueError(
            f"Unknown entity: {entity!r}. Available: {sorted(ENTITIES)}"
        ) from None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GetFileContent:
    file_id: str
    method = Method.GET

    def payload(self) -> dict[str, Any]:
        return {"action": Action.GET_FILE_CONTENT.value, "fileId": self.file_id}


@dataclass(frozen=True)
class DeleteRemoteFiles:
    file_ids: tuple[str, ...]
    method = Method.POST

    def payload(self) -> dict[str, Any]:
        return {"action": Action.DELETE_REMOTE_FILES.value, "fileIds": list(self.file_ids)}


@dataclass(frozen=True)
class UploadFile:
    file_name: str
    mime_type: str
    data: bytes
    item: dict[str, Any] = field(default_factory=dict)
    method = Method.POST

    def payload(self) -> dict[str, Any]:
        return {
            "action": Action.SAVE_ITEM.value,
            "item": self.item,
            "file": {
                "fileName": self.file_name,
                "mimeType": self.mime_type,
                "fileData": base64.b64encode(self.data).decode("ascii"),
            },
        }


@dataclass(frozen=True)
class GetProfile:
    method = Method.GET

    def payload(self) -> dict[str, Any]:
        return {"action": Action.GET_PROFILE.value}


@dataclass(frozen=True)
class SaveEntity:
    """``save<Entity>``: the record item plus, optionally, its content blob."""
    action: str
    item: dict[str, Any]
    content: Optional[Any] = None
    method = Method.POST

    def payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {"action": self.action, "item": self.item}
        if self.content is not None:
            body["content"] = self.content
        return body


@dataclass(frozen=True)
class DeleteEntity:
    action: str
    id: str
    method = Method.POST

    def payload(self) -> dict[str, Any]:
        return {"action": self.action, "id": self.id}


@dataclass(frozen=True)
class ListEntities:
    action: str
    page: int = 1
    limit: int = 25
    search: str = ""
    sort_key: str = "createdAt"
    sort_dir: str = "desc"
    filters: tuple[tuple[str, str], ...] = ()
    method = Method.GET

    def payload(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "action": self.action,
            "page": self.page,
            "limit": self.limit,
            "search": self.search,
            "sortKey": self.sort_key,
            "sortDir": self.sort_dir,
        }
        params.update(dict(self.filters))
        return params


Request = (
    GetFileContent | DeleteRemoteFiles | UploadFile | GetProfile
    | SaveEntity | DeleteEntity | ListEntities
)


# ---------------------------------------------------------------------------
# Layer contracts
# ---------------------------------------------------------------------------


@runtime_checkable
class RecordPersister(Protocol):
    """
    Saves record metadata.

    Implemented by:
    - RecordService (HTTP, ``save<Entity>`` without content)
    """

    async def save(self, record: Record) -> Result[Record]: ...


@runtime_checkable
class RefJournalProtocol(Protocol):
    """Durable store for pointers whose record save has not succeeded yet."""

    def record(self, record: Record) -> None: ...

    def resolve(self, record: Record) -> None: ...
