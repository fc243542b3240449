"""
auth/permissions.py -- Permission tag normalization and access decisions.

Permissions are flat string tags. A user holds a set of tags; a resource
requires a set of tags. There is no hierarchy and only one wildcard:
the reserved "admin" tag grants access to everything.

parse_tag_set() is the ONLY place raw persisted permission values are
interpreted. Legacy rows hold JSON arrays, empty strings, NULLs, and the
occasional unparsable string; all of them come out as a frozenset[str].
A parse failure is logged and treated as "no tags" -- it is tolerated data
drift, not an internal error.

Policy note: an empty required set means public. A project whose stored
permissions cannot be parsed therefore becomes visible to everyone. This is
deliberate and matches how the rows were always interpreted.

Layer rule: pure functions, no imports from api/, cache/, or the store.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auth.models import Project

logger = logging.getLogger("keyhold.auth.permissions")

ADMIN = "admin"
EDITOR = "editor"


def parse_tag_set(raw: Any) -> frozenset[str]:
    """Normalize a stored permission value into a frozenset of tags.

    Accepts None, a JSON string, or an already-decoded list/tuple/set.
    Non-string items are dropped. Never raises.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, (frozenset, set, list, tuple)):
        return frozenset(t for t in raw if isinstance(t, str) and t)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        logger.warning("Ignoring permissions of unexpected type %s", type(raw).__name__)
        return frozenset()
    if not raw.strip():
        return frozenset()
    try:
        decoded = json.loads(raw)
    except ValueError:
        logger.warning("Unparsable permissions value %r, treating as empty", raw[:100])
        return frozenset()
    if not isinstance(decoded, list):
        logger.warning("Permissions value is not a JSON array: %r", raw[:100])
        return frozenset()
    return frozenset(t for t in decoded if isinstance(t, str) and t)


def dump_tag_set(tags: Iterable[str]) -> str:
    """Serialize tags for storage. Sorted so equal sets store identically."""
    return json.dumps(sorted(set(tags)))


def allowed(user_tags: Iterable[str], required_tags: Iterable[str]) -> bool:
    """Return True if a holder of user_tags may access a resource requiring required_tags.

    Rules, in order:
      1. Nothing required -> allowed (public resource).
      2. "admin" held     -> allowed.
      3. Otherwise every required tag must be held (AND, not OR).
    """
    required = frozenset(required_tags)
    if not required:
        return True
    held = frozenset(user_tags)
    if ADMIN in held:
        return True
    return required <= held


def visible_projects(projects: Iterable[Project], user_tags: Iterable[str]) -> list[Project]:
    """Filter projects down to those the caller may see, keeping the input order."""
    held = frozenset(user_tags)
    return [p for p in projects if allowed(held, parse_tag_set(p.permissions))]


def is_admin(tags: Iterable[str]) -> bool:
    return ADMIN in frozenset(tags)


def can_edit_projects(tags: Iterable[str]) -> bool:
    held = frozenset(tags)
    return ADMIN in held or EDITOR in held
