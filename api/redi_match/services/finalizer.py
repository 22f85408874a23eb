from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from .. import repo
from . import notifications
from .cycles import Cycle, current_cycle_id, is_same_local_day, local_date
from .errors import CycleBoundaryError
from .match_store import InMemoryMatchStore, SqlMatchStore
from .matching import assemble_cycle_matches

logger = logging.getLogger(__name__)

TRIGGERS = ("scheduled", "manual")


@dataclass
class RunSummary:
    cycle_id: str | None
    trigger: str
    status: str = "completed"
    respondents: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    matched_users: int = 0
    matches_added: int = 0
    notified: int = 0
    cycle_completed: bool = False
    dry_run: bool = False
    abort_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _finish(summary: RunSummary, status: str, reason: str | None = None) -> RunSummary:
    summary.status = status
    summary.abort_reason = reason
    summary.finished_at = datetime.now(timezone.utc)
    logger.info(
        "[FINALIZER] run %s cycle=%s trigger=%s status=%s processed=%s skipped=%s failed=%s matched=%s added=%s notified=%s%s",
        "dry-run" if summary.dry_run else "live",
        summary.cycle_id,
        summary.trigger,
        summary.status,
        summary.processed,
        summary.skipped,
        summary.failed,
        summary.matched_users,
        summary.matches_added,
        summary.notified,
        f" reason={reason}" if reason else "",
    )
    return summary


def _preview_store(cycle_id: str) -> InMemoryMatchStore:
    """In-memory copy of the cycle's stored records for a dry run."""
    store = InMemoryMatchStore()
    for record in SqlMatchStore().list_for_cycle(cycle_id):
        store.put(record)
    return store


def check_run_window(cycle: Cycle, now: datetime, trigger: str) -> None:
    """Refuse a scheduled run unless today is the cycle's match day.

    Manual runs are operator decisions and always pass.
    """
    if trigger == "manual":
        return
    if not is_same_local_day(cycle.match_at, now):
        raise CycleBoundaryError(
            f"cycle {cycle.cycle_id} matches on {local_date(cycle.match_at)}, not {local_date(now)}"
        )


def run_weekly_matching(
    now: datetime | None = None,
    trigger: str = "scheduled",
    store: Any | None = None,
    dry_run: bool = False,
) -> RunSummary:
    """Run one weekly pass over the active cycle.

    Only resolving the cycle, listing its respondents and (for a dry run)
    loading its stored records can abort the run; everything per user is
    contained by the assembler. A dry run computes against an in-memory
    copy of the stored records and leaves the cycle and the outbox alone.
    """
    if trigger not in TRIGGERS:
        raise ValueError(f"trigger must be one of {TRIGGERS}, got {trigger!r}")
    now = now or datetime.now(timezone.utc)
    summary = RunSummary(cycle_id=None, trigger=trigger, dry_run=dry_run, started_at=now)

    try:
        cycle = repo.get_active_cycle()
    except Exception as exc:
        logger.exception("[FINALIZER] could not resolve the active cycle")
        return _finish(summary, "aborted", f"active cycle lookup failed: {exc}")
    if cycle is None:
        return _finish(summary, "no_active_cycle")
    summary.cycle_id = cycle.cycle_id

    try:
        check_run_window(cycle, now, trigger)
    except CycleBoundaryError as exc:
        logger.warning("[FINALIZER] refusing scheduled run: %s", exc)
        return _finish(summary, "refused", str(exc))

    try:
        respondents = repo.list_respondent_ids(cycle.cycle_id)
    except Exception as exc:
        logger.exception("[FINALIZER] could not list respondents for %s", cycle.cycle_id)
        return _finish(summary, "aborted", f"respondent listing failed: {exc}")
    if not respondents:
        return _finish(summary, "empty")

    if store is None and dry_run:
        try:
            store = _preview_store(cycle.cycle_id)
        except Exception as exc:
            logger.exception("[FINALIZER] could not load stored matches for %s", cycle.cycle_id)
            return _finish(summary, "aborted", f"match history unavailable: {exc}")
    elif store is None:
        store = SqlMatchStore()

    result = assemble_cycle_matches(
        cycle.cycle_id,
        respondents,
        load_profiles=repo.get_profiles,
        load_preferences=repo.get_preferences,
        load_blocked=repo.get_blocked_map,
        load_history=store.list_for_user,
        upsert=store.upsert,
        now=now,
    )
    summary.respondents = result.respondents
    summary.processed = result.processed
    summary.skipped = result.skipped
    summary.failed = result.failed
    summary.matched_users = result.matched_users
    summary.matches_added = result.matches_added

    if dry_run:
        return _finish(summary, "completed")

    try:
        summary.cycle_completed = repo.complete_cycle(cycle.cycle_id, now)
    except Exception:
        logger.exception("[FINALIZER] could not mark %s completed", cycle.cycle_id)

    summary.notified = notifications.enqueue_match_drop_notifications(cycle.cycle_id, result.recipients, now)
    return _finish(summary, "completed")


def activate_weekly_cycle(now: datetime | None = None, trigger: str = "scheduled", cycle_id: str | None = None) -> Cycle | None:
    """Make this week's cycle (or ``cycle_id``) the single active one.

    A scheduled activation only proceeds on the cycle's release day.
    Returns ``None`` when the cycle does not exist.
    """
    if trigger not in TRIGGERS:
        raise ValueError(f"trigger must be one of {TRIGGERS}, got {trigger!r}")
    now = now or datetime.now(timezone.utc)
    cycle_id = cycle_id or current_cycle_id(now)

    cycle = repo.get_cycle(cycle_id)
    if cycle is None:
        logger.warning("[FINALIZER] no cycle %s to activate", cycle_id)
        return None
    if trigger == "scheduled" and not is_same_local_day(cycle.release_at, now):
        raise CycleBoundaryError(
            f"cycle {cycle_id} releases on {local_date(cycle.release_at)}, not {local_date(now)}"
        )
    return repo.activate_cycle(cycle_id, now)
