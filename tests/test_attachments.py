"""Tests for vaultsync.attachments: uploads, node-scoped deletes, placeholders."""

import httpx
import pytest

from tests.conftest import NODE_1, NODE_2, NODE_3
from vaultsync.attachments import (
    AttachmentManager,
    add_placeholder,
    discard,
    local_preview,
    parse_vault,
    resolve,
    serialize_vault,
)
from vaultsync.errors import ErrorKind
from vaultsync.transport import NodeClient
from vaultsync.types import AttachmentRef, AttachmentState


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_goes_to_default_node(self, backend, client):
        result = await AttachmentManager(client).upload("poster.png", "image/png", b"\x89PNG")

        assert result.ok
        ref = result.value
        assert ref.node_url == NODE_1
        assert ref.label == "poster.png"
        assert ref.state is AttachmentState.COMMITTED
        assert backend.files[NODE_1][ref.file_id] == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_upload_label(self, client):
        result = await AttachmentManager(client).upload("a.pdf", "application/pdf", b"%", label="Syllabus")
        assert result.value.label == "Syllabus"

    @pytest.mark.asyncio
    async def test_upload_failure(self, backend, client):
        backend.fail_actions["saveItem"] = 1
        result = await AttachmentManager(client).upload("a.txt", "text/plain", b"x")
        assert result.error is ErrorKind.NETWORK_FAILURE

    @pytest.mark.asyncio
    async def test_upload_without_file_id(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"status": "success"}))
        async with NodeClient(NODE_1, transport=transport) as c:
            result = await AttachmentManager(c).upload("a.txt", "text/plain", b"x")
        assert result.error is ErrorKind.MALFORMED_RESPONSE


class TestRemove:
    @pytest.mark.asyncio
    async def test_deletes_route_to_owning_nodes(self, backend, client):
        """Each attachment is deleted on its own node, never the default."""
        backend.put_file(NODE_2, "f2")
        backend.put_file(NODE_3, "f3")
        manager = AttachmentManager(client)

        a2 = AttachmentRef(label="two", file_id="f2", node_url=NODE_2)
        a3 = AttachmentRef(label="three", file_id="f3", node_url=NODE_3)
        assert await manager.remove(a2)
        assert await manager.remove(a3)

        deletes = backend.actions("deleteRemoteFiles")
        assert [(d.node, d.body["fileIds"]) for d in deletes] == [
            (NODE_2, ["f2"]),
            (NODE_3, ["f3"]),
        ]
        assert backend.files[NODE_2] == {}
        assert backend.files[NODE_3] == {}

    @pytest.mark.asyncio
    async def test_links_and_pending_need_no_request(self, backend, client):
        manager = AttachmentManager(client)
        assert await manager.remove(AttachmentRef(label="l", type="LINK", url="https://x"))
        assert await manager.remove(
            AttachmentRef(label="p", state=AttachmentState.PENDING, temp_id="t")
        )
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_missing_node_skips_delete(self, backend, client, caplog):
        result = await AttachmentManager(client).remove(AttachmentRef(label="old", file_id="f1"))
        assert result is False
        assert backend.requests == []
        assert "no owning node" in caplog.text

    @pytest.mark.asyncio
    async def test_unreachable_node_is_soft_failure(self, backend, client):
        backend.down_nodes.add(NODE_2)
        result = await AttachmentManager(client).remove(
            AttachmentRef(label="x", file_id="f2", node_url=NODE_2)
        )
        assert result is False


class TestPlaceholders:
    def test_pending_entries_not_serialized(self):
        committed = AttachmentRef(label="a", file_id="f1", node_url=NODE_1, mime_type="image/png")
        items, placeholder = add_placeholder([committed], "b.png", "image/png")

        assert placeholder.pending
        assert placeholder.temp_id
        assert serialize_vault(items) == [committed.to_wire()]

    def test_blob_without_pending_round_trips(self):
        blob = [
            {"type": "FILE", "fileId": "f1", "nodeUrl": NODE_2, "label": "a", "mimeType": "image/png"},
            {"type": "LINK", "url": "https://x.test", "label": "x"},
        ]
        assert serialize_vault(parse_vault(blob)) == blob

    def test_resolve_keeps_position(self):
        first = AttachmentRef(label="first", file_id="f0")
        items, p1 = add_placeholder([first], "one.png", "image/png", "data:image/png;base64,AA==")
        items, p2 = add_placeholder(items, "two.png", "image/png")

        done = AttachmentRef(label="one.png", file_id="f1", node_url=NODE_1)
        items = resolve(items, p1.temp_id, done)

        assert [a.label for a in items] == ["first", "one.png", "two.png"]
        assert items[1].state is AttachmentState.COMMITTED
        assert items[1].temp_id is None
        assert items[1].preview_url is None
        assert items[2].pending

    def test_discard(self):
        items, p = add_placeholder([], "x", "text/plain")
        assert discard(items, p.temp_id) == []

    def test_local_preview(self):
        assert local_preview("image/png", b"\x00").startswith("data:image/png;base64,")
        assert local_preview("application/pdf", b"%") is None

    def test_parse_vault_shapes(self):
        assert parse_vault(None) == []
        assert parse_vault({"items": [{"type": "LINK", "url": "u", "label": "l"}]})[0].is_link
        with pytest.raises(ValueError):
            parse_vault("not a list")
