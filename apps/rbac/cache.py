"""
In-process permission cache.

Maps a user id to the set of permission ids granted by their role, so that
permission checks do not hit the database on every request. Entries expire
after a fixed TTL and are invalidated explicitly whenever a user's role
assignment or a role's permission set changes.
"""
import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300  # 5 minutes


class PermissionCache:
    """
    Thread-safe TTL cache of resolved permission sets.

    ``clock`` must be monotonic and return seconds; tests inject a fake one
    to exercise expiry. Keys are normalised to strings so integer ids and
    URL path parameters share entries.
    """

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError(f"Permission cache TTL must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[FrozenSet[str], float]] = {}
        self._lock = threading.Lock()

    def get(self, user_id) -> Optional[FrozenSet[str]]:
        """
        Return the cached permission set for ``user_id``.

        Returns None when there is no entry or the entry is at least
        ``ttl`` seconds old; expired entries are dropped.
        """
        key = str(user_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            permission_ids, stored_at = entry
            if self._clock() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            return permission_ids

    def put(self, user_id, permission_ids: Iterable[str]) -> FrozenSet[str]:
        """Store (or overwrite) the permission set for ``user_id``."""
        frozen = frozenset(permission_ids)
        with self._lock:
            self._entries[str(user_id)] = (frozen, self._clock())
        return frozen

    def invalidate(self, user_id) -> None:
        """Drop the entry for ``user_id`` if present."""
        with self._lock:
            self._entries.pop(str(user_id), None)
        logger.debug(f"Permission cache invalidated for user {user_id}")

    def invalidate_many(self, user_ids: Iterable) -> None:
        keys = [str(user_id) for user_id in user_ids]
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)
        if keys:
            logger.debug(f"Permission cache invalidated for {len(keys)} users")

    def invalidate_all(self) -> None:
        """Clear every entry."""
        with self._lock:
            self._entries.clear()
        logger.info("Permission cache cleared")

    def __len__(self):
        now = self._clock()
        with self._lock:
            return sum(1 for _, stored_at in self._entries.values() if now - stored_at < self.ttl)

    def __contains__(self, user_id):
        return self.get(user_id) is not None


def get_permission_cache() -> PermissionCache:
    """Return the process-wide cache built by the rbac app config."""
    from django.apps import apps
    return apps.get_app_config('rbac').permission_cache
