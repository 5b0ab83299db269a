"""Tests for vaultsync.locator: content reads, writes, migration and commit."""

import httpx
import pytest

from tests.conftest import NODE_1, NODE_2
from vaultsync.errors import ErrorKind
from vaultsync.locator import ContentLocator, needs_ref_update
from vaultsync.records import RecordService
from vaultsync.ref_journal import RefJournal
from vaultsync.transport import NodeClient
from vaultsync.types import ContentRef, Record


@pytest.fixture
def locator(client):
    return ContentLocator(client, RecordService(client), retry_backoff=0)


def activity(ref=None):
    return Record("a1", "activity", {"title": "Field trip"}, ref or ContentRef())


class TestReadContent:
    @pytest.mark.asyncio
    async def test_empty_ref_is_none(self, backend, locator):
        result = await locator.read_content(ContentRef())
        assert result.ok
        assert result.value is None
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_reads_from_owning_node(self, backend, locator):
        backend.put_blob(NODE_2, "v1", {"items": [1]})
        result = await locator.read_content(ContentRef("v1", NODE_2))

        assert result.value == {"items": [1]}
        assert backend.requests[0].node == NODE_2

    @pytest.mark.asyncio
    async def test_missing_blob_is_failure(self, locator):
        result = await locator.read_content(ContentRef("nope", NODE_1))
        assert result.error is ErrorKind.NETWORK_FAILURE

    @pytest.mark.asyncio
    async def test_invalid_json_blob(self, backend, locator):
        backend.blobs[NODE_1] = {"v1": "{not json"}
        result = await locator.read_content(ContentRef("v1"))
        assert result.error is ErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_already_decoded_content(self):
        body = {"status": "success", "content": [{"a": 1}]}
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json=body))
        async with NodeClient(NODE_1, transport=transport) as c:
            result = await ContentLocator(c, RecordService(c)).read_content(ContentRef("v1"))
        assert result.value == [{"a": 1}]


class TestWriteContent:
    @pytest.mark.asyncio
    async def test_read_after_first_write(self, locator):
        """A first write assigns an id, and the blob reads back unchanged."""
        blob = {"items": [{"type": "LINK", "url": "https://x.test", "label": "X"}], "n": 3}
        outcome = await locator.write_content(activity(), ContentRef("", None), blob)

        assert outcome.ok
        assert outcome.ref.content_id
        assert outcome.migrated

        result = await locator.read_content(outcome.ref)
        assert result.value == blob

    @pytest.mark.asyncio
    async def test_migration_returns_new_ref(self, backend, locator):
        backend.put_blob(NODE_1, "v1", [])
        backend.migrate_to = NODE_2

        outcome = await locator.write_content(activity(), ContentRef("v1", NODE_1), ["new"])

        assert outcome.migrated
        assert outcome.ref.node_url == NODE_2
        assert outcome.ref.content_id != "v1"
        assert (await locator.read_content(outcome.ref)).value == ["new"]

    @pytest.mark.asyncio
    async def test_unmoved_write_keeps_ref(self, backend, locator):
        backend.put_blob(NODE_1, "v1", [])
        outcome = await locator.write_content(activity(), ContentRef("v1", NODE_1), [1])
        assert outcome.ref == ContentRef("v1", NODE_1)
        assert not outcome.migrated

    @pytest.mark.asyncio
    async def test_write_failure(self, backend, locator):
        backend.fail_actions["saveActivity"] = 1
        outcome = await locator.write_content(activity(), ContentRef("v1"), [1])
        assert not outcome.ok
        assert outcome.ref == ContentRef("v1")

    @pytest.mark.asyncio
    async def test_entity_without_content(self, locator):
        with pytest.raises(ValueError, match="no content"):
            await locator.write_content(Record("p1", "colleague"), ContentRef(), {})

    def test_needs_ref_update(self):
        assert not needs_ref_update(ContentRef("a", None), ContentRef("a", ""))
        assert needs_ref_update(ContentRef("a", NODE_1), ContentRef("a", NODE_2))
        assert needs_ref_update(ContentRef("a"), ContentRef("b"))


class TestCommit:
    @pytest.mark.asyncio
    async def test_persists_migrated_ref(self, backend, locator):
        backend.put_blob(NODE_1, "v1", [])
        backend.migrate_to = NODE_2

        result = await locator.commit(activity(ContentRef("v1", NODE_1)), ["moved"])

        assert result.ok
        assert result.value.ref.node_url == NODE_2
        stored = backend.records["activity"]["a1"]
        assert stored["vaultJsonId"] == result.value.ref.content_id
        assert stored["storageNodeUrl"] == NODE_2

    @pytest.mark.asyncio
    async def test_record_save_issued_even_without_migration(self, backend, locator):
        backend.put_blob(NODE_1, "v1", [])
        await locator.commit(activity(ContentRef("v1", NODE_1)), [1])

        saves = backend.actions("saveActivity")
        assert len(saves) == 2
        assert "content" in saves[0].body
        assert "content" not in saves[1].body

    @pytest.mark.asyncio
    async def test_retries_pointer_save(self, backend, locator):
        backend.fail_pointer_saves = 2
        result = await locator.commit(activity(), [1])

        assert result.ok
        assert len([r for r in backend.actions("saveActivity") if "content" not in r.body]) == 3

    @pytest.mark.asyncio
    async def test_partial_failure_is_journaled(self, backend, client, tmp_path):
        journal = RefJournal(tmp_path / "refs.db")
        locator = ContentLocator(
            client, RecordService(client), journal=journal, ref_save_retries=2, retry_backoff=0,
        )
        backend.fail_pointer_saves = 5

        result = await locator.commit(activity(), {"items": []})

        assert result.error is ErrorKind.PARTIAL_FAILURE
        assert result.value is not None
        assert result.value.ref.content_id
        assert journal.count() == 1

        # Once the backend recovers, replaying the journal closes the gap
        backend.fail_pointer_saves = 0
        counts = await RecordService(client).replay_journal(journal)
        assert counts["saved"] == 1
        assert backend.records["activity"]["a1"]["vaultJsonId"] == result.value.ref.content_id
        journal.close()

    @pytest.mark.asyncio
    async def test_content_write_failure_is_not_partial(self, backend, client, tmp_path):
        journal = RefJournal(tmp_path / "refs.db")
        locator = ContentLocator(client, RecordService(client), journal=journal)
        backend.fail_actions["saveActivity"] = 1

        result = await locator.commit(activity(), [1])

        assert result.error is ErrorKind.NETWORK_FAILURE
        assert result.value is None
        assert journal.count() == 0
        journal.close()

    @pytest.mark.asyncio
    async def test_write_failure_keeps_its_kind(self):
        """A garbled write response stays MALFORMED_RESPONSE through commit."""
        bodies = iter([
            httpx.Response(200, text="<html>Sign in</html>"),
            httpx.Response(200, json={"status": "success", "newVaultId": "", "newNodeUrl": ""}),
        ])
        transport = httpx.MockTransport(lambda r: next(bodies))
        async with NodeClient(NODE_1, transport=transport) as c:
            locator = ContentLocator(c, RecordService(c), retry_backoff=0)
            garbled = await locator.commit(activity(), [1])
            no_id = await locator.commit(activity(), [1])

        assert garbled.error is ErrorKind.MALFORMED_RESPONSE
        assert no_id.error is ErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_success_clears_matching_row(self, backend, client, tmp_path):
        journal = RefJournal(tmp_path / "refs.db")
        backend.put_blob(NODE_1, "v1", [])
        journal.record(activity(ContentRef("v1", NODE_1)))
        locator = ContentLocator(client, RecordService(client), journal=journal, retry_backoff=0)

        result = await locator.commit(activity(ContentRef("v1", NODE_1)), [1])

        assert result.ok
        assert journal.stats()["pending"] == 0
        journal.close()
