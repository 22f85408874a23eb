from __future__ import annotations

from typing import Any, Iterable


def build_blocked_map(user_ids: Iterable[str], rows: Iterable[dict[str, Any]]) -> dict[str, set[str]]:
    """Map each requested user to everyone they blocked or were blocked by.

    ``rows`` are block relations with ``blocker_id``/``blocked_id``; the
    direction is discarded so one row excludes the pair both ways.
    """
    blocked: dict[str, set[str]] = {str(uid): set() for uid in user_ids}
    for row in rows:
        a = str(row["blocker_id"])
        b = str(row["blocked_id"])
        if a == b:
            continue
        if a in blocked:
            blocked[a].add(b)
        if b in blocked:
            blocked[b].add(a)
    return blocked


def are_users_blocked(blocked_map: dict[str, set[str]], user_a: str, user_b: str) -> bool:
    return user_b in blocked_map.get(user_a, set()) or user_a in blocked_map.get(user_b, set())
