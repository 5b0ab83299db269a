"""
Async HTTP transport for node backends.

One NodeClient talks to every node: requests go to the default node unless
the caller names another node URL (blobs and attachments live wherever a
prior write put them). Responses share the envelope
``{status: 'success'|'error', data?, totalCount?, message?}``.

Transport errors, non-2xx statuses, unparseable bodies and error envelopes
all come back as failed Results. Only cancellation propagates.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

from .errors import ConfigError, ErrorKind
from .protocol import Method, Request
from .types import Result

logger = logging.getLogger(__name__)

# Timeouts
DEFAULT_TIMEOUT = 30.0


class NodeClient:
    """HTTP client for the node backends."""

    def __init__(
        self,
        default_node: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not default_node:
            raise ConfigError(
                "No default node configured. Set [remote] default_node in "
                "vaultsync.toml or VAULTSYNC_NODE_URL."
            )
        self._default_node = default_node
        # Apps Script style backends answer POSTs with a redirect to the result
        self._client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def default_node(self) -> str:
        return self._default_node

    def resolve(self, node_url: Optional[str]) -> str:
        return node_url or self._default_node

    async def send(self, request: Request, node_url: Optional[str] = None) -> Result[dict]:
        """Dispatch a request to a node and unwrap the response envelope."""
        target = self.resolve(node_url)
        payload = request.payload()
        action = payload.get("action")
        try:
            if request.method is Method.GET:
                # Merge into any query the node URL already carries
                url = httpx.URL(target).copy_merge_params(payload)
                resp = await self._client.get(url)
            else:
                resp = await self._client.post(target, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("%s on %s failed: HTTP %d", action, target, e.response.status_code)
            return Result.failure(
                ErrorKind.NETWORK_FAILURE, f"HTTP {e.response.status_code}"
            )
        except httpx.HTTPError as e:
            logger.warning("%s on %s failed: %s", action, target, e)
            return Result.failure(ErrorKind.NETWORK_FAILURE, str(e) or type(e).__name__)

        return _unwrap(resp, action, target)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "NodeClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False


def _unwrap(resp: httpx.Response, action: Any, target: str) -> Result[dict]:
    try:
        body = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("%s on %s returned unparseable body: %s", action, target, e)
        return Result.failure(ErrorKind.MALFORMED_RESPONSE, "Response is not JSON")

    if not isinstance(body, dict) or "status" not in body:
        logger.warning("%s on %s returned no envelope", action, target)
        return Result.failure(ErrorKind.MALFORMED_RESPONSE, "Response has no status envelope")

    if body["status"] != "success":
        message = str(body.get("message") or body["status"])
        logger.info("%s on %s rejected: %s", action, target, message)
        return Result.failure(ErrorKind.NETWORK_FAILURE, message)

    return Result.success(body)
