from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable

from ..config import MATCH_CAP, MATCH_WORKERS
from .compatibility import Preference, Profile, compute_compatibility, is_mutually_eligible
from .cycles import local_date
from .match_store import MatchRecord

logger = logging.getLogger(__name__)

ProfileLoader = Callable[[list[str]], dict[str, Profile]]
PreferenceLoader = Callable[[list[str]], dict[str, Preference]]
BlockLoader = Callable[[list[str]], dict[str, set[str]]]
HistoryLoader = Callable[[str], list[MatchRecord]]
Upsert = Callable[[str, str, list[str], datetime], "MatchRecord | None"]


@dataclass
class MatchCandidate:
    user_id: str
    matched_user_id: str
    score_total: float
    score_breakdown: dict[str, Any]


@dataclass
class UserData:
    profile: Profile
    preference: Preference
    blocked: set[str] = field(default_factory=set)


@dataclass
class AssemblyResult:
    cycle_id: str
    respondents: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    matched_users: int = 0
    matches_added: int = 0
    recipients: list[tuple[str, int]] = field(default_factory=list)
    skipped_user_ids: list[str] = field(default_factory=list)
    failed_user_ids: list[str] = field(default_factory=list)


def dedupe_ids(user_ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for uid in user_ids:
        uid = str(uid).strip()
        if not uid or uid in seen:
            continue
        seen.add(uid)
        out.append(uid)
    return out


def _lookup_with_fallback(label: str, loader: Callable[[list[str]], dict[str, Any]], user_ids: list[str]) -> tuple[dict[str, Any], set[str]]:
    """Run a batched lookup, retrying user by user if the batch call fails.

    Returns the merged results and the ids whose own lookup also failed.
    """
    try:
        return dict(loader(user_ids)), set()
    except Exception:
        logger.warning("[LOOKUP] batched %s lookup failed for %s users; retrying per user", label, len(user_ids), exc_info=True)

    out: dict[str, Any] = {}
    failed: set[str] = set()
    for uid in user_ids:
        try:
            out.update(loader([uid]))
        except Exception:
            logger.warning("[LOOKUP] %s lookup failed for %s", label, uid, exc_info=True)
            failed.add(uid)
    return out, failed


def build_user_data_map(
    user_ids: list[str],
    load_profiles: ProfileLoader,
    load_preferences: PreferenceLoader,
    load_blocked: BlockLoader,
) -> tuple[dict[str, UserData], list[str], list[str], set[str]]:
    """Join profiles, preferences and block lists for a respondent set.

    Returns ``(data, skipped, failed, unblockable)``. Users missing a profile
    or a preference are skipped; users whose profile or preference lookup
    errored are failed. Neither appears in ``data``. ``unblockable`` holds
    users in ``data`` whose own block lookup errored: they may still be
    offered to others but cannot be matched themselves.
    """
    profiles, profile_failed = _lookup_with_fallback("profile", load_profiles, user_ids)
    preferences, pref_failed = _lookup_with_fallback("preference", load_preferences, user_ids)

    data: dict[str, UserData] = {}
    skipped: list[str] = []
    failed: list[str] = []
    for uid in user_ids:
        if uid in profile_failed or uid in pref_failed:
            failed.append(uid)
            continue
        profile = profiles.get(uid)
        pref = preferences.get(uid)
        if profile is None or pref is None:
            logger.info(
                "[MATCHING] skipping %s: missing %s",
                uid,
                "profile" if profile is None else "preference",
            )
            skipped.append(uid)
            continue
        data[uid] = UserData(profile=profile, preference=pref)

    blocked, block_failed = _lookup_with_fallback("block", load_blocked, list(data.keys()))
    for uid, entry in data.items():
        entry.blocked = set(blocked.get(uid, set()))

    return data, skipped, failed, block_failed


def find_matches_for_user(
    user_id: str,
    data: dict[str, UserData],
    pool: list[str],
    existing: Iterable[str],
    today: date,
    limit: int = MATCH_CAP,
) -> list[MatchCandidate]:
    """Rank eligible candidates for ``user_id`` and keep the best ``limit``.

    Ties keep pool order: the sort is stable and never falls back to ids.
    """
    if limit <= 0:
        return []
    me = data[user_id]
    already = set(existing)
    ranked: list[MatchCandidate] = []
    for candidate_id in pool:
        if candidate_id == user_id or candidate_id in already:
            continue
        other = data.get(candidate_id)
        if other is None:
            continue
        if candidate_id in me.blocked or user_id in other.blocked:
            continue
        if not is_mutually_eligible(me.profile, me.preference, other.profile, other.preference, today):
            continue
        comp = compute_compatibility(me.profile, other.profile, today)
        ranked.append(
            MatchCandidate(
                user_id=user_id,
                matched_user_id=candidate_id,
                score_total=float(comp["score_total"]),
                score_breakdown=comp["score_breakdown"],
            )
        )
    ranked.sort(key=lambda c: c.score_total, reverse=True)
    return ranked[:limit]


def existing_matches_for_cycle(history: list[MatchRecord], cycle_id: str) -> list[str]:
    for record in history:
        if record.cycle_id == cycle_id:
            return list(record.matches)
    return []


def assemble_cycle_matches(
    cycle_id: str,
    respondent_ids: list[str],
    *,
    load_profiles: ProfileLoader,
    load_preferences: PreferenceLoader,
    load_blocked: BlockLoader,
    load_history: HistoryLoader,
    upsert: Upsert,
    now: datetime,
    max_workers: int = MATCH_WORKERS,
) -> AssemblyResult:
    user_ids = dedupe_ids(respondent_ids)
    result = AssemblyResult(cycle_id=cycle_id, respondents=len(user_ids))
    if not user_ids:
        return result

    today = local_date(now)
    data, skipped, failed, unblockable = build_user_data_map(user_ids, load_profiles, load_preferences, load_blocked)
    result.skipped_user_ids.extend(skipped)
    result.failed_user_ids.extend(failed)
    pool = [uid for uid in user_ids if uid in data]
    for uid in pool:
        if uid in unblockable:
            logger.warning("[MATCHING] %s: block list unavailable for %s; not matching this user", cycle_id, uid)
            result.failed_user_ids.append(uid)
    workers = [uid for uid in pool if uid not in unblockable]

    def _process(uid: str) -> tuple[int, int]:
        existing = existing_matches_for_cycle(load_history(uid), cycle_id)
        picks = find_matches_for_user(uid, data, pool, existing, today, limit=MATCH_CAP - len(existing))
        if not picks:
            logger.info("[MATCHING] %s: no new candidates for %s (%s existing)", cycle_id, uid, len(existing))
            return 0, len(existing)
        record = upsert(uid, cycle_id, [p.matched_user_id for p in picks], now)
        total = len(record.matches) if record else 0
        return max(0, total - len(existing)), total

    with ThreadPoolExecutor(max_workers=max(1, int(max_workers))) as pool_executor:
        futures = {pool_executor.submit(_process, uid): uid for uid in workers}
        outcomes: dict[str, tuple[int, int]] = {}
        for future in as_completed(futures):
            uid = futures[future]
            try:
                outcomes[uid] = future.result()
            except Exception:
                logger.exception("[MATCHING] %s: failed to assemble matches for %s", cycle_id, uid)
                result.failed_user_ids.append(uid)

    # fan-in in respondent order so summaries are reproducible
    for uid in workers:
        if uid not in outcomes:
            continue
        added, total = outcomes[uid]
        result.processed += 1
        if added > 0:
            result.matched_users += 1
            result.matches_added += added
        # every user holding matches, not only those who gained some; the
        # outbox key dedupes repeats
        if total > 0:
            result.recipients.append((uid, total))

    result.skipped = len(result.skipped_user_ids)
    result.failed = len(result.failed_user_ids)
    logger.info(
        "[MATCHING] %s: respondents=%s processed=%s skipped=%s failed=%s matched_users=%s matches_added=%s",
        cycle_id,
        result.respondents,
        result.processed,
        result.skipped,
        result.failed,
        result.matched_users,
        result.matches_added,
    )
    return result


def audit_cycle_mutuality(records: list[MatchRecord]) -> dict[str, Any]:
    """Report one-sided and malformed entries across a cycle's records.

    Selection is greedy per user, so one-sided entries are expected; this
    is a diagnostic, not a correctness check.
    """
    by_user = {r.user_id: set(r.matches) for r in records}
    one_sided: list[dict[str, str]] = []
    invalid: list[dict[str, str]] = []
    for record in records:
        seen: set[str] = set()
        for match_id in record.matches:
            if not match_id or not str(match_id).strip():
                invalid.append({"user_id": record.user_id, "match_id": match_id, "reason": "blank"})
                continue
            if match_id == record.user_id:
                invalid.append({"user_id": record.user_id, "match_id": match_id, "reason": "self"})
                continue
            if match_id in seen:
                invalid.append({"user_id": record.user_id, "match_id": match_id, "reason": "duplicate"})
                continue
            seen.add(match_id)
            if record.user_id not in by_user.get(match_id, set()):
                one_sided.append({"user_id": record.user_id, "match_id": match_id})
    return {
        "records": len(records),
        "one_sided": one_sided,
        "invalid": invalid,
        "mutual": not one_sided and not invalid,
    }
