"""
cache/store.py -- Process-wide read-through caches for users and projects.

The user and project tables are read on every request (caller resolution,
project listing) and written rarely, so both are shadowed in memory. The
store stays authoritative: the caches are non-owning copies that are dropped
explicitly on every write.

Invalidation is manual. Every code path that mutates a user row must call
UserCache.invalidate(user_id) afterwards; every project mutation must call
ProjectCache.invalidate(). The managers in auth/accounts.py and
auth/projects.py are the only writers, so that is where the calls live.

No TTL, no eviction, no lock. A reader racing an invalidate may re-cache the
old row for one request; the next invalidate or restart reconciles it.

Usage:
    users = UserCache(store.get_user_by_id)
    user = users.get(42)        # loads from the store on first access
    users.invalidate(42)        # after any write to user 42
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class UserCache(Generic[T]):
    def __init__(self, loader: Callable[[int], T | None]) -> None:
        self._loader = loader
        self._entries: dict[int, T] = {}

    def get(self, user_id: int) -> T | None:
        """Return the cached user, loading it from the store on a miss.

        Missing users are not cached, so a user created later is found.
        """
        entry = self._entries.get(user_id)
        if entry is not None:
            return entry
        entry = self._loader(user_id)
        if entry is not None:
            self._entries[user_id] = entry
        return entry

    def put(self, user_id: int, user: T) -> None:
        self._entries[user_id] = user

    def invalidate(self, user_id: int) -> None:
        """Drop the cached copy unconditionally."""
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ProjectCache(Generic[T]):
    """Caches the full project list as one entry."""

    def __init__(self, loader: Callable[[], list[T]]) -> None:
        self._loader = loader
        self._projects: list[T] | None = None

    def all(self) -> list[T]:
        if self._projects is None:
            self._projects = self._loader()
        return list(self._projects)

    def invalidate(self) -> None:
        self._projects = None

    @property
    def loaded(self) -> bool:
        return self._projects is not None
