from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import bindparam, text

from .config import LOOKUP_BATCH_SIZE
from .database import SessionLocal
from .services.blocking import build_blocked_map
from .services.compatibility import Preference, Profile
from .services.cycles import Cycle
from .services.errors import CycleStateError
from .services.state_machine import transition_cycle_status

logger = logging.getLogger(__name__)

_CYCLE_COLUMNS = "cycle_id, prompt, release_at, match_at, status, active, activated_at, matches_generated_at"


def _chunks(values: list[str], size: int | None = None) -> Iterator[list[str]]:
    size = max(1, int(size or LOOKUP_BATCH_SIZE))
    for i in range(0, len(values), size):
        yield values[i : i + size]


def get_active_cycle() -> Cycle | None:
    with SessionLocal() as db:
        row = db.execute(
            text(
                f"""
                SELECT {_CYCLE_COLUMNS}
                FROM weekly_cycle
                WHERE active = TRUE
                ORDER BY activated_at DESC NULLS LAST
                LIMIT 1
                """
            )
        ).mappings().first()
    return Cycle.from_row(dict(row)) if row else None


def get_cycle(cycle_id: str) -> Cycle | None:
    with SessionLocal() as db:
        row = db.execute(
            text(f"SELECT {_CYCLE_COLUMNS} FROM weekly_cycle WHERE cycle_id = :cycle_id"),
            {"cycle_id": cycle_id},
        ).mappings().first()
    return Cycle.from_row(dict(row)) if row else None


def activate_cycle(cycle_id: str, now: datetime) -> Cycle | None:
    """Make ``cycle_id`` the only active cycle, in one transaction."""
    with SessionLocal() as db:
        row = db.execute(
            text(f"SELECT {_CYCLE_COLUMNS} FROM weekly_cycle WHERE cycle_id = :cycle_id FOR UPDATE"),
            {"cycle_id": cycle_id},
        ).mappings().first()
        if not row:
            return None
        try:
            new_status = transition_cycle_status(str(row["status"]), "activate")
        except CycleStateError:
            db.rollback()
            raise

        deactivated = db.execute(
            text("UPDATE weekly_cycle SET active = FALSE WHERE active = TRUE AND cycle_id <> :cycle_id"),
            {"cycle_id": cycle_id},
        )
        db.execute(
            text(
                """
                UPDATE weekly_cycle
                SET active = TRUE, status = :status, activated_at = :now
                WHERE cycle_id = :cycle_id
                """
            ),
            {"cycle_id": cycle_id, "status": new_status, "now": now},
        )
        db.commit()

    logger.info("[CYCLE] activated %s (deactivated %s other)", cycle_id, int(deactivated.rowcount or 0))
    return get_cycle(cycle_id)


def complete_cycle(cycle_id: str, now: datetime) -> bool:
    with SessionLocal() as db:
        row = db.execute(
            text("SELECT status FROM weekly_cycle WHERE cycle_id = :cycle_id FOR UPDATE"),
            {"cycle_id": cycle_id},
        ).mappings().first()
        if not row:
            return False
        new_status = transition_cycle_status(str(row["status"]), "complete")
        db.execute(
            text(
                """
                UPDATE weekly_cycle
                SET status = :status, active = FALSE, matches_generated_at = :now
                WHERE cycle_id = :cycle_id
                """
            ),
            {"cycle_id": cycle_id, "status": new_status, "now": now},
        )
        db.commit()
    return True


def list_respondent_ids(cycle_id: str) -> list[str]:
    with SessionLocal() as db:
        rows = db.execute(
            text(
                """
                SELECT user_id
                FROM cycle_answer
                WHERE cycle_id = :cycle_id
                ORDER BY answered_at ASC, user_id ASC
                """
            ),
            {"cycle_id": cycle_id},
        ).mappings().all()
    return [str(r["user_id"]) for r in rows]


def get_profiles(user_ids: list[str]) -> dict[str, Profile]:
    stmt = text(
        """
        SELECT user_id, gender, birth_date, class_year, school, majors, interests, clubs
        FROM user_profile
        WHERE user_id IN :ids
        """
    ).bindparams(bindparam("ids", expanding=True))
    out: dict[str, Profile] = {}
    with SessionLocal() as db:
        for batch in _chunks(list(user_ids)):
            for row in db.execute(stmt, {"ids": batch}).mappings().all():
                profile = Profile.from_row(dict(row))
                out[profile.user_id] = profile
    return out


def get_preferences(user_ids: list[str]) -> dict[str, Preference]:
    stmt = text(
        """
        SELECT user_id, age_min, age_max, genders, years, schools, majors
        FROM user_preference
        WHERE user_id IN :ids
        """
    ).bindparams(bindparam("ids", expanding=True))
    out: dict[str, Preference] = {}
    with SessionLocal() as db:
        for batch in _chunks(list(user_ids)):
            for row in db.execute(stmt, {"ids": batch}).mappings().all():
                pref = Preference.from_row(dict(row))
                out[pref.user_id] = pref
    return out


def get_blocked_map(user_ids: list[str]) -> dict[str, set[str]]:
    stmt = text(
        """
        SELECT blocker_id, blocked_id
        FROM user_block
        WHERE blocker_id IN :ids OR blocked_id IN :ids
        """
    ).bindparams(bindparam("ids", expanding=True))
    rows: list[dict[str, Any]] = []
    with SessionLocal() as db:
        for batch in _chunks(list(user_ids)):
            rows.extend(dict(r) for r in db.execute(stmt, {"ids": batch}).mappings().all())
    return build_blocked_map(user_ids, rows)
