"""
Cached user profile summary for headers and avatars.

The cache is an explicit object handed to whatever needs it. Edits made
elsewhere reach it through named events instead of touching shared state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .types import Result

logger = logging.getLogger(__name__)

DEFAULT_NAME = "Vault User"
DEFAULT_PHOTO = ""


class ProfileEvent(Enum):
    PROFILE_UPDATED = "profile-updated"   # payload: {"fullName", "photoUrl"}
    PHOTO_CHANGED = "photo-changed"       # payload: photo url
    INVALIDATED = "invalidated"


@dataclass(frozen=True)
class ProfileSummary:
    name: str = DEFAULT_NAME
    photo: str = DEFAULT_PHOTO


def display_name(full_name: Optional[str]) -> str:
    """Name shown in the header: the part before academic titles."""
    name = (full_name or "").split(",")[0].strip()
    return name or DEFAULT_NAME


class ProfileCache:
    """Fetch-once cache of the profile summary with event-driven updates."""

    def __init__(self, fetch: Callable[[], Awaitable[Result[dict]]]):
        self._fetch = fetch
        self._summary: Optional[ProfileSummary] = None
        self._listeners: list[Callable[[ProfileSummary], Any]] = []

    @property
    def loaded(self) -> bool:
        return self._summary is not None

    @property
    def current(self) -> ProfileSummary:
        """Cached summary, or the defaults before the first load."""
        return self._summary or ProfileSummary()

    async def get(self, force: bool = False) -> ProfileSummary:
        if self._summary is not None and not force:
            return self._summary

        result = await self._fetch()
        if not result.ok:
            logger.info("Profile fetch failed: %s", result.message)
            return self.current

        profile = result.value or {}
        self._store(ProfileSummary(
            name=display_name(profile.get("fullName")),
            photo=profile.get("photoUrl") or DEFAULT_PHOTO,
        ))
        return self._summary

    def subscribe(self, listener: Callable[[ProfileSummary], Any]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def dispatch(self, event: ProfileEvent, payload: Any = None) -> None:
        """Apply a named update without refetching."""
        if event is ProfileEvent.INVALIDATED:
            self._summary = None
            return
        if event is ProfileEvent.PROFILE_UPDATED:
            payload = payload or {}
            self._store(ProfileSummary(
                name=display_name(payload.get("fullName")),
                photo=payload.get("photoUrl") or DEFAULT_PHOTO,
            ))
        elif event is ProfileEvent.PHOTO_CHANGED:
            self._store(ProfileSummary(name=self.current.name, photo=payload or DEFAULT_PHOTO))

    def _store(self, summary: ProfileSummary) -> None:
        self._summary = summary
        for listener in list(self._listeners):
            listener(summary)
