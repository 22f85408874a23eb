from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy import text

from ..config import MATCH_CAP, MATCH_HISTORY_LIMIT
from ..database import SessionLocal
from .cycles import next_weekly_boundary
from .errors import CapExceededError, MatchingError

logger = logging.getLogger(__name__)


@dataclass
class MatchRecord:
    user_id: str
    cycle_id: str
    matches: list[str] = field(default_factory=list)
    revealed: list[bool] = field(default_factory=list)
    created_at: datetime | None = None
    expires_at: datetime | None = None
    chat_unlocked: list[bool] | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MatchRecord":
        chat = _json_list(row.get("chat_unlocked")) if row.get("chat_unlocked") is not None else None
        return cls(
            user_id=str(row["user_id"]),
            cycle_id=str(row["cycle_id"]),
            matches=[str(m) for m in _json_list(row.get("matches"))],
            revealed=[bool(r) for r in _json_list(row.get("revealed"))],
            created_at=row.get("created_at"),
            expires_at=row.get("expires_at"),
            chat_unlocked=[bool(c) for c in chat] if chat is not None else None,
        )

    def copy(self) -> "MatchRecord":
        return MatchRecord(
            user_id=self.user_id,
            cycle_id=self.cycle_id,
            matches=list(self.matches),
            revealed=list(self.revealed),
            created_at=self.created_at,
            expires_at=self.expires_at,
            chat_unlocked=list(self.chat_unlocked) if self.chat_unlocked is not None else None,
        )


def _json_list(value: Any) -> list[Any]:
    if isinstance(value, str):
        value = json.loads(value)
    return list(value) if isinstance(value, (list, tuple)) else []


def clean_candidates(user_id: str, candidates: Iterable[str]) -> list[str]:
    """Drop blanks, the owner and repeats, keeping first-seen order."""
    out: list[str] = []
    for c in candidates:
        if not isinstance(c, str) or not c.strip() or c == user_id or c in out:
            continue
        out.append(c)
    return out


def check_record_invariants(record: MatchRecord, cap: int = MATCH_CAP) -> None:
    if len(record.matches) > cap:
        raise CapExceededError(f"{record.user_id}/{record.cycle_id} holds {len(record.matches)} matches (cap {cap})")
    if len(record.revealed) != len(record.matches):
        raise MatchingError(f"{record.user_id}/{record.cycle_id} revealed flags out of step with matches")
    if record.chat_unlocked is not None and len(record.chat_unlocked) != len(record.matches):
        raise MatchingError(f"{record.user_id}/{record.cycle_id} chat flags out of step with matches")
    if len(set(record.matches)) != len(record.matches):
        raise MatchingError(f"{record.user_id}/{record.cycle_id} has duplicate matches")
    if record.user_id in record.matches:
        raise MatchingError(f"{record.user_id}/{record.cycle_id} is matched with itself")


def new_match_record(user_id: str, cycle_id: str, candidates: list[str], now: datetime, cap: int = MATCH_CAP) -> MatchRecord:
    matches = candidates[:cap]
    return MatchRecord(
        user_id=user_id,
        cycle_id=cycle_id,
        matches=matches,
        revealed=[False] * len(matches),
        created_at=now,
        expires_at=next_weekly_boundary(now),
    )


def append_matches(record: MatchRecord, candidates: list[str], cap: int = MATCH_CAP) -> list[str]:
    """Append unseen candidates in order until the cap; returns what was added.

    Existing entries are never removed or reordered.
    """
    check_record_invariants(record, cap)
    added: list[str] = []
    for c in candidates:
        if len(record.matches) >= cap:
            break
        if c in record.matches:
            continue
        record.matches.append(c)
        record.revealed.append(False)
        if record.chat_unlocked is not None:
            record.chat_unlocked.append(False)
        added.append(c)
    return added


class InMemoryMatchStore:
    """Process-local store with one lock per (user, cycle) key.

    Used for dry runs and tests; it honours the same upsert contract as
    the SQL store.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], MatchRecord] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()

    def _key_lock(self, key: tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            return self._locks[key]

    def put(self, record: MatchRecord) -> None:
        check_record_invariants(record)
        with self._key_lock((record.user_id, record.cycle_id)):
            self._store((record.user_id, record.cycle_id), record.copy())

    def upsert(self, user_id: str, cycle_id: str, candidates: list[str], now: datetime) -> MatchRecord | None:
        proposed = clean_candidates(user_id, candidates)
        key = (user_id, cycle_id)
        with self._key_lock(key):
            with self._registry_lock:
                current = self._records.get(key)
            if current is None:
                if not proposed:
                    return None
                record = new_match_record(user_id, cycle_id, proposed, now)
                self._store(key, record)
                return record.copy()
            working = current.copy()
            added = append_matches(working, proposed)
            if added:
                self._store(key, working)
            return working.copy()

    def _store(self, key: tuple[str, str], record: MatchRecord) -> None:
        with self._registry_lock:
            self._records[key] = record

    def _snapshot(self) -> list[tuple[tuple[str, str], MatchRecord]]:
        with self._registry_lock:
            return list(self._records.items())

    def get(self, user_id: str, cycle_id: str) -> MatchRecord | None:
        with self._registry_lock:
            record = self._records.get((user_id, cycle_id))
        return record.copy() if record else None

    def list_for_user(self, user_id: str, limit: int = MATCH_HISTORY_LIMIT) -> list[MatchRecord]:
        rows = [r for (uid, _), r in self._snapshot() if uid == user_id]
        rows.sort(key=lambda r: r.created_at.timestamp() if r.created_at else 0.0, reverse=True)
        return [r.copy() for r in rows[:limit]]

    def list_for_cycle(self, cycle_id: str) -> list[MatchRecord]:
        return [r.copy() for (_, cid), r in self._snapshot() if cid == cycle_id]


_RECORD_COLUMNS = "user_id, cycle_id, matches, revealed, chat_unlocked, created_at, expires_at"


class SqlMatchStore:
    """Postgres-backed store keyed by (user_id, cycle_id).

    Upsert runs in one transaction: ``INSERT ... ON CONFLICT DO NOTHING``
    creates the record, otherwise the row is locked with ``FOR UPDATE``
    before the append is computed and written.
    """

    def __init__(self, session_factory: Callable[[], Any] = SessionLocal) -> None:
        self._session_factory = session_factory

    def upsert(self, user_id: str, cycle_id: str, candidates: list[str], now: datetime) -> MatchRecord | None:
        proposed = clean_candidates(user_id, candidates)
        if not proposed:
            return self.get(user_id, cycle_id)

        with self._session_factory() as db:
            fresh = new_match_record(user_id, cycle_id, proposed, now)
            inserted = db.execute(
                text(
                    """
                    INSERT INTO weekly_match (user_id, cycle_id, matches, revealed, created_at, expires_at)
                    VALUES (:user_id, :cycle_id, CAST(:matches AS jsonb), CAST(:revealed AS jsonb), :created_at, :expires_at)
                    ON CONFLICT (user_id, cycle_id) DO NOTHING
                    RETURNING user_id
                    """
                ),
                {
                    "user_id": user_id,
                    "cycle_id": cycle_id,
                    "matches": json.dumps(fresh.matches),
                    "revealed": json.dumps(fresh.revealed),
                    "created_at": fresh.created_at,
                    "expires_at": fresh.expires_at,
                },
            ).first()
            if inserted is not None:
                db.commit()
                logger.info("[MATCH_STORE] created %s/%s with %s", user_id, cycle_id, fresh.matches)
                return fresh

            row = db.execute(
                text(
                    f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM weekly_match
                    WHERE user_id = :user_id AND cycle_id = :cycle_id
                    FOR UPDATE
                    """
                ),
                {"user_id": user_id, "cycle_id": cycle_id},
            ).mappings().first()
            if row is None:
                db.rollback()
                raise MatchingError(f"{user_id}/{cycle_id} vanished during upsert")

            record = MatchRecord.from_row(dict(row))
            added = append_matches(record, proposed)
            if not added:
                db.rollback()
                logger.info("[MATCH_STORE] no new matches for %s/%s (duplicates or at cap)", user_id, cycle_id)
                return record

            db.execute(
                text(
                    """
                    UPDATE weekly_match
                    SET matches = CAST(:matches AS jsonb),
                        revealed = CAST(:revealed AS jsonb),
                        chat_unlocked = CAST(:chat_unlocked AS jsonb)
                    WHERE user_id = :user_id AND cycle_id = :cycle_id
                    """
                ),
                {
                    "user_id": user_id,
                    "cycle_id": cycle_id,
                    "matches": json.dumps(record.matches),
                    "revealed": json.dumps(record.revealed),
                    "chat_unlocked": json.dumps(record.chat_unlocked) if record.chat_unlocked is not None else None,
                },
            )
            db.commit()
            logger.info("[MATCH_STORE] appended %s to %s/%s (total %s)", added, user_id, cycle_id, len(record.matches))
            return record

    def get(self, user_id: str, cycle_id: str) -> MatchRecord | None:
        with self._session_factory() as db:
            row = db.execute(
                text(f"SELECT {_RECORD_COLUMNS} FROM weekly_match WHERE user_id = :user_id AND cycle_id = :cycle_id"),
                {"user_id": user_id, "cycle_id": cycle_id},
            ).mappings().first()
        return MatchRecord.from_row(dict(row)) if row else None

    def list_for_user(self, user_id: str, limit: int = MATCH_HISTORY_LIMIT) -> list[MatchRecord]:
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM weekly_match
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC
                    LIMIT :limit
                    """
                ),
                {"user_id": user_id, "limit": max(1, int(limit))},
            ).mappings().all()
        return [MatchRecord.from_row(dict(r)) for r in rows]

    def list_for_cycle(self, cycle_id: str) -> list[MatchRecord]:
        with self._session_factory() as db:
            rows = db.execute(
                text(f"SELECT {_RECORD_COLUMNS} FROM weekly_match WHERE cycle_id = :cycle_id ORDER BY user_id"),
                {"cycle_id": cycle_id},
            ).mappings().all()
        return [MatchRecord.from_row(dict(r)) for r in rows]
