"""Per-session memoizing profile store."""

from __future__ import annotations

import logging
from typing import Iterable

from lms_chat.backend.base import BaseBackend
from lms_chat.exceptions import BackendError
from lms_chat.models import Profile

logger = logging.getLogger(__name__)


class ProfileCache:
    """Maps user id -> Profile for the lifetime of one session.

    There is no eviction; a cache belongs to a single session and is
    dropped with it. All mutation happens on the session's event loop.
    """

    def __init__(self, backend: BaseBackend):
        self._backend = backend
        self._profiles: dict[str, Profile] = {}

    def __contains__(self, profile_id: str) -> bool:
        return profile_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def get(self, profile_id: str) -> Profile | None:
        """Cache-only lookup."""
        return self._profiles.get(profile_id)

    def prime(self, profile: Profile) -> None:
        self._profiles[profile.id] = profile

    def clear(self) -> None:
        self._profiles.clear()

    async def ensure(self, profile_id: str) -> Profile | None:
        """Return the cached profile, fetching it on a miss. None on failure."""
        cached = self._profiles.get(profile_id)
        if cached is not None:
            return cached
        try:
            row = await self._backend.fetch_profile(profile_id)
        except BackendError as e:
            logger.warning(f"Error loading profile {profile_id}: {e}")
            return None
        if not row:
            return None
        profile = Profile.from_row(row)
        self._profiles[profile.id] = profile
        return profile

    async def ensure_many(self, profile_ids: Iterable[str]) -> None:
        """Fetch every uncached id in one batched query."""
        missing = list(dict.fromkeys(i for i in profile_ids if i and i not in self._profiles))
        if not missing:
            return
        try:
            rows = await self._backend.fetch_profiles(missing)
        except BackendError as e:
            logger.warning(f"Error loading {len(missing)} profiles: {e}")
            return
        for row in rows:
            profile = Profile.from_row(row)
            self._profiles[profile.id] = profile
        logger.debug(f"Cached {len(rows)} of {len(missing)} requested profiles")
