"""
Attachment lifecycle: upload, node-scoped delete and optimistic placeholders.

New uploads always land on the current default node. Deletes go to the
node recorded on the attachment, which is where its bytes actually live.

While an upload is in flight the vault shows a pending placeholder, keyed
by a client-generated temp id. Placeholders are replaced in place when
the upload commits, removed when it fails, and never serialized.
"""

from __future__ import annotations

import base64
import logging
import uuid
from dataclasses import replace
from typing import Any, Iterable, Optional, Sequence

from .errors import ErrorKind
from .protocol import DeleteRemoteFiles, UploadFile
from .transport import NodeClient
from .types import AttachmentRef, AttachmentState, Result

logger = logging.getLogger(__name__)


class AttachmentManager:
    """Uploads and deletes attachment bytes on the nodes."""

    def __init__(self, client: NodeClient):
        self._client = client

    async def upload(
        self,
        file_name: str,
        mime_type: str,
        data: bytes,
        *,
        label: Optional[str] = None,
    ) -> Result[AttachmentRef]:
        """POST ``saveItem`` with the file to the default node."""
        request = UploadFile(file_name=file_name, mime_type=mime_type, data=data)
        result = await self._client.send(request)
        if not result.ok:
            logger.warning("Upload of %s failed: %s", file_name, result.message)
            return Result.failure(result.error, result.message)

        file_id = result.value.get("fileId")
        if not file_id:
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, "Upload response has no fileId")
        return Result.success(AttachmentRef(
            label=label or file_name,
            file_id=file_id,
            node_url=result.value.get("nodeUrl") or self._client.default_node,
            mime_type=mime_type,
        ))

    async def remove(self, attachment: AttachmentRef) -> bool:
        """Delete an attachment's bytes on the node that stores them.

        Returns False when the bytes could not be reclaimed. Callers drop
        the local reference either way: the index must not keep pointing
        at a file the user removed, so this is logged, not raised.
        """
        if attachment.is_link or attachment.pending:
            return True
        if not attachment.file_id or not attachment.node_url:
            logger.warning(
                "Attachment %r has no owning node; skipping byte deletion", attachment.label
            )
            return False

        result = await self._client.send(
            DeleteRemoteFiles((attachment.file_id,)), node_url=attachment.node_url
        )
        if not result.ok:
            logger.warning(
                "Could not delete %s on %s (%s); removing reference anyway",
                attachment.file_id, attachment.node_url, result.message,
            )
            return False
        return True


# ---------------------------------------------------------------------------
# Placeholder helpers (pure; operate on immutable attachment lists)
# ---------------------------------------------------------------------------


def local_preview(mime_type: str, data: bytes) -> Optional[str]:
    """Inline preview for images so a placeholder renders immediately."""
    if not mime_type.startswith("image/"):
        return None
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def add_placeholder(
    items: Sequence[AttachmentRef],
    label: str,
    mime_type: str,
    preview_url: Optional[str] = None,
) -> tuple[list[AttachmentRef], AttachmentRef]:
    placeholder = AttachmentRef(
        label=label,
        mime_type=mime_type,
        state=AttachmentState.PENDING,
        temp_id=uuid.uuid4().hex,
        preview_url=preview_url,
    )
    return [*items, placeholder], placeholder


def resolve(
    items: Sequence[AttachmentRef], temp_id: str, committed: AttachmentRef
) -> list[AttachmentRef]:
    """Replace the placeholder ``temp_id`` in place with the committed ref."""
    final = replace(committed, state=AttachmentState.COMMITTED, temp_id=None, preview_url=None)
    return [final if a.temp_id == temp_id else a for a in items]


def discard(items: Sequence[AttachmentRef], temp_id: str) -> list[AttachmentRef]:
    return [a for a in items if a.temp_id != temp_id]


def serialize_vault(items: Iterable[AttachmentRef]) -> list[dict[str, Any]]:
    """Wire form of a vault's entries. Pending placeholders are dropped."""
    return [a.to_wire() for a in items if not a.pending]


def parse_vault(content: Any) -> list[AttachmentRef]:
    """Vault entries from a blob: a bare list or ``{"items": [...]}``."""
    if content is None:
        return []
    if isinstance(content, dict):
        content = content.get("items", [])
    if not isinstance(content, list):
        raise ValueError("Vault content is not a list of entries")
    return [AttachmentRef.from_wire(e) for e in content if isinstance(e, dict)]
