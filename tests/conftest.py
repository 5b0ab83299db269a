"""
Shared pytest fixtures for vaultsync tests.

Provides an in-memory multi-node backend served through httpx.MockTransport,
so the client stack runs end to end without a network. Each node URL keeps
its own blobs and files; records live on the default node. Migration and
failure injection are switchable per test.
"""

import base64
import itertools
import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import pytest
import pytest_asyncio

from vaultsync.protocol import ENTITIES
from vaultsync.transport import NodeClient


NODE_1 = "https://node-1.test/exec"
NODE_2 = "https://node-2.test/exec"
NODE_3 = "https://node-3.test/exec"


@dataclass
class LoggedRequest:
    node: str
    method: str
    action: str
    body: dict[str, Any]


class FakeBackend:
    """
    Deterministic stand-in for a fleet of storage nodes.

    Knobs:
        migrate_to: node URL that every content write moves its blob to
        fail_actions: action -> number of upcoming requests answered HTTP 500
        fail_pointer_saves: upcoming save<Entity> calls *without* content to reject
        down_nodes: node URLs that refuse connections
    """

    def __init__(self, default_node: str = NODE_1):
        self.default_node = default_node
        self.blobs: dict[str, dict[str, str]] = {}
        self.files: dict[str, dict[str, bytes]] = {}
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.profile = {"fullName": "Dr. Ana Ruiz, PhD", "photoUrl": "https://img.test/ana.png"}
        self.requests: list[LoggedRequest] = []

        self.migrate_to: Optional[str] = None
        self.fail_actions: dict[str, int] = {}
        self.fail_pointer_saves = 0
        self.down_nodes: set[str] = set()

        self._ids = itertools.count(1)
        self._save_actions = {s.save_action: s for s in ENTITIES.values()}
        self._list_actions = {s.list_action: s for s in ENTITIES.values()}
        self._delete_actions = {s.delete_action: s for s in ENTITIES.values()}

    # -- seeding helpers ----------------------------------------------------

    def put_blob(self, node: str, content_id: str, content: Any) -> None:
        self.blobs.setdefault(node, {})[content_id] = json.dumps(content)

    def put_record(self, entity: str, item: dict[str, Any]) -> None:
        self.records.setdefault(entity, {})[item["id"]] = dict(item)

    def put_file(self, node: str, file_id: str, data: bytes = b"bytes") -> None:
        self.files.setdefault(node, {})[file_id] = data

    def actions(self, action: str) -> list[LoggedRequest]:
        return [r for r in self.requests if r.action == action]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # -- request handling -----------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        node = str(request.url.copy_with(query=None))
        if request.method == "GET":
            body = dict(request.url.params)
        else:
            body = json.loads(request.content or b"{}")
        action = body.get("action", "")
        self.requests.append(LoggedRequest(node, request.method, action, body))

        if node in self.down_nodes:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_actions.get(action, 0) > 0:
            self.fail_actions[action] -= 1
            return httpx.Response(500, text="Internal error")

        try:
            data = self._dispatch(node, action, body)
        except LookupError as e:
            return httpx.Response(200, json={"status": "error", "message": str(e)})
        return httpx.Response(200, json={"status": "success", **data})

    def _dispatch(self, node: str, action: str, body: dict[str, Any]) -> dict[str, Any]:
        if action == "getFileContent":
            blob = self.blobs.get(node, {}).get(body["fileId"])
            if blob is None:
                raise LookupError(f"File {body['fileId']} not found")
            return {"content": blob}
        if action == "saveItem":
            file_id = f"file-{next(self._ids)}"
            self.put_file(node, file_id, base64.b64decode(body["file"]["fileData"]))
            return {"fileId": file_id, "nodeUrl": node}
        if action == "deleteRemoteFiles":
            for file_id in body["fileIds"]:
                self.files.get(node, {}).pop(file_id, None)
            return {}
        if action == "getProfile":
            return {"data": dict(self.profile)}
        if action in self._list_actions:
            return self._list(self._list_actions[action], body)
        if action in self._save_actions:
            return self._save(node, self._save_actions[action], body)
        if action in self._delete_actions:
            schema = self._delete_actions[action]
            if self.records.get(schema.name, {}).pop(body["id"], None) is None:
                raise LookupError(f"Record {body['id']} not found")
            return {}
        raise LookupError(f"Unknown action {action}")

    def _list(self, schema, params: dict[str, Any]) -> dict[str, Any]:
        items = list(self.records.get(schema.name, {}).values())
        search = params.get("search", "").lower()
        if search:
            items = [i for i in items if search in str(i.get("title", "")).lower()]
        page = int(params.get("page", 1))
        limit = int(params.get("limit", 25))
        start = (page - 1) * limit
        return {"data": items[start:start + limit], "totalCount": len(items)}

    def _save(self, node: str, schema, body: dict[str, Any]) -> dict[str, Any]:
        item = dict(body["item"])
        if "content" not in body:
            if self.fail_pointer_saves > 0:
                self.fail_pointer_saves -= 1
                raise LookupError("Record sheet is locked")
            self.put_record(schema.name, item)
            return {}

        content_id = item.get(schema.content_field) or ""
        target = item.get(schema.node_field) or node
        if self.migrate_to and self.migrate_to != target:
            target = self.migrate_to
            content_id = ""
        if not content_id:
            content_id = f"blob-{next(self._ids)}"
        self.put_blob(target, content_id, body["content"])

        item[schema.content_field] = content_id
        item[schema.node_field] = target
        self.put_record(schema.name, item)
        return {"newVaultId": content_id, "newNodeUrl": target}


@pytest.fixture
def backend():
    """Fresh fake node fleet."""
    return FakeBackend()


@pytest_asyncio.fixture
async def client(backend):
    """NodeClient wired to the fake backend, default node NODE_1."""
    async with NodeClient(NODE_1, transport=backend.transport()) as c:
        yield c


class FakeTimers:
    """Manual scheduler with the ``loop.call_later`` shape."""

    @dataclass
    class Handle:
        delay: float
        callback: Any
        cancelled: bool = False

        def cancel(self):
            self.cancelled = True

    def __init__(self):
        self.handles: list[FakeTimers.Handle] = []

    def call_later(self, delay, callback):
        handle = FakeTimers.Handle(delay, callback)
        self.handles.append(handle)
        return handle

    def fire_all(self):
        """Run every timer that has not been cancelled."""
        for handle in list(self.handles):
            if not handle.cancelled:
                handle.callback()


@pytest.fixture
def timers():
    return FakeTimers()
