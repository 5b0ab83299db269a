"""
vaultsync: client-side sync for records whose content lives on many nodes.

Records are small and paginated; their content blobs and attachment bytes
live on whichever storage node last accepted a write. Every write may move
data to another node, and the client keeps the pointers straight.

Basic usage:
    async with NodeClient("https://node-1.example") as client:
        records = RecordService(client)
        locator = ContentLocator(client, records)
        page = await records.list("activity")
        result = await locator.commit(page.value.items[0], {"items": []})
"""

__version__ = "0.3.0"

from .attachments import AttachmentManager
from .errors import ConfigError, ErrorKind, SyncError
from .executor import CancelToken, TimeboxedExecutor
from .locator import ContentLocator
from .optimistic import RecordStore, apply_delete, apply_update
from .profile_cache import ProfileCache, ProfileEvent
from .records import RecordService
from .ref_journal import RefJournal
from .transport import NodeClient
from .types import AttachmentRef, AttachmentState, ContentRef, Page, Record, Result
from .vault import LocalFile, VaultSession

__all__ = [
    "__version__",
    "AttachmentManager",
    "AttachmentRef",
    "AttachmentState",
    "CancelToken",
    "ConfigError",
    "ContentLocator",
    "ContentRef",
    "ErrorKind",
    "LocalFile",
    "NodeClient",
    "Page",
    "ProfileCache",
    "ProfileEvent",
    "Record",
    "RecordService",
    "RecordStore",
    "RefJournal",
    "Result",
    "SyncError",
    "TimeboxedExecutor",
    "VaultSession",
    "apply_delete",
    "apply_update",
]
