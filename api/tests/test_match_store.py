import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from redi_match.services.errors import CapExceededError, MatchingError
from redi_match.services.match_store import (
    InMemoryMatchStore,
    MatchRecord,
    SqlMatchStore,
    append_matches,
    check_record_invariants,
    clean_candidates,
)

NOW = datetime(2026, 10, 16, 14, 0, tzinfo=timezone.utc)


def _record(user_id: str = "x", cycle_id: str = "2026-W42", matches=None, **kw) -> MatchRecord:
    matches = list(matches or [])
    return MatchRecord(
        user_id=user_id,
        cycle_id=cycle_id,
        matches=matches,
        revealed=kw.pop("revealed", [False] * len(matches)),
        created_at=kw.pop("created_at", NOW),
        expires_at=kw.pop("expires_at", NOW + timedelta(days=7)),
        **kw,
    )


def test_create_sets_flags_and_expiry():
    store = InMemoryMatchStore()
    rec = store.upsert("x", "2026-W42", ["a", "b"], NOW)
    assert rec.matches == ["a", "b"]
    assert rec.revealed == [False, False]
    assert rec.chat_unlocked is None
    assert rec.created_at == NOW
    assert rec.expires_at == datetime(2026, 10, 23, 4, 0, tzinfo=timezone.utc)


def test_create_caps_at_three():
    store = InMemoryMatchStore()
    rec = store.upsert("x", "2026-W42", ["a", "b", "c", "d"], NOW)
    assert rec.matches == ["a", "b", "c"]


def test_empty_upsert_on_missing_key_creates_nothing():
    store = InMemoryMatchStore()
    assert store.upsert("x", "2026-W42", [], NOW) is None
    assert store.get("x", "2026-W42") is None


def test_clean_candidates_drops_self_blank_and_repeats():
    assert clean_candidates("x", ["a", "x", "", "  ", "a", "b"]) == ["a", "b"]


def test_append_respects_cap_and_order():
    rec = _record(matches=["a", "b"], revealed=[True, False])
    added = append_matches(rec, ["c", "d"])
    assert added == ["c"]
    assert rec.matches == ["a", "b", "c"]
    assert rec.revealed == [True, False, False]


def test_append_extends_chat_flags_when_present():
    rec = _record(matches=["a"], chat_unlocked=[True])
    append_matches(rec, ["b", "c"])
    assert rec.chat_unlocked == [True, False, False]


def test_upsert_is_idempotent_and_never_reorders():
    store = InMemoryMatchStore()
    first = store.upsert("x", "2026-W42", ["a"], NOW)
    second = store.upsert("x", "2026-W42", ["a"], NOW + timedelta(hours=1))
    assert first == second

    third = store.upsert("x", "2026-W42", ["c", "a", "b"], NOW)
    assert third.matches == ["a", "c", "b"]
    assert third.created_at == NOW


def test_full_record_is_a_noop_that_returns_current():
    store = InMemoryMatchStore()
    store.upsert("x", "2026-W42", ["a", "b", "c"], NOW)
    rec = store.upsert("x", "2026-W42", ["z"], NOW)
    assert rec.matches == ["a", "b", "c"]


def test_same_user_other_cycle_is_separate_record():
    store = InMemoryMatchStore()
    store.upsert("x", "2026-W41", ["a"], NOW - timedelta(days=7))
    rec = store.upsert("x", "2026-W42", ["a"], NOW)
    assert rec.matches == ["a"]
    assert [r.cycle_id for r in store.list_for_user("x")] == ["2026-W42", "2026-W41"]
    assert store.list_for_user("x", limit=1)[0].cycle_id == "2026-W42"


def test_invariant_checks():
    with pytest.raises(CapExceededError):
        check_record_invariants(_record(matches=["a", "b", "c", "d"]))
    with pytest.raises(MatchingError):
        check_record_invariants(_record(matches=["a"], revealed=[]))
    with pytest.raises(MatchingError):
        check_record_invariants(_record(matches=["a", "a"]))
    with pytest.raises(MatchingError):
        check_record_invariants(_record(matches=["x"]))
    with pytest.raises(CapExceededError):
        InMemoryMatchStore().put(_record(matches=["a", "b", "c", "d"]))


def test_returned_records_are_copies():
    store = InMemoryMatchStore()
    rec = store.upsert("x", "2026-W42", ["a"], NOW)
    rec.matches.append("zzz")
    assert store.get("x", "2026-W42").matches == ["a"]


def test_concurrent_upserts_never_exceed_cap_or_lose_writes():
    store = InMemoryMatchStore()
    proposals = [[f"c{i}"] for i in range(8)] + [["c0", "c1"], ["c2", "c9"]]
    barrier = threading.Barrier(len(proposals))
    errors: list[Exception] = []

    def _worker(cands):
        barrier.wait()
        try:
            store.upsert("x", "2026-W42", cands, NOW)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(p,)) for p in proposals]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    rec = store.get("x", "2026-W42")
    assert len(rec.matches) == 3
    assert len(set(rec.matches)) == 3
    assert rec.revealed == [False, False, False]


def test_concurrent_upserts_below_cap_keep_both_writers():
    store = InMemoryMatchStore()
    store.upsert("x", "2026-W42", ["a"], NOW)
    barrier = threading.Barrier(2)

    def _worker(cand):
        barrier.wait()
        store.upsert("x", "2026-W42", [cand], NOW)

    threads = [threading.Thread(target=_worker, args=(c,)) for c in ("b", "c")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    rec = store.get("x", "2026-W42")
    assert rec.matches[0] == "a"
    assert sorted(rec.matches[1:]) == ["b", "c"]


def test_listing_while_new_users_are_written():
    store = InMemoryMatchStore()
    writers = 4
    barrier = threading.Barrier(writers + 2)
    errors: list[Exception] = []

    def _writer(n):
        barrier.wait()
        try:
            for i in range(200):
                store.upsert(f"u{n}-{i}", "2026-W42", ["a"], NOW)
        except Exception as exc:
            errors.append(exc)

    def _reader():
        barrier.wait()
        try:
            for i in range(200):
                store.list_for_cycle("2026-W42")
                store.list_for_user("u0-0")
                store.get(f"u1-{i}", "2026-W42")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_writer, args=(n,)) for n in range(writers)]
    threads += [threading.Thread(target=_reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(store.list_for_cycle("2026-W42")) == writers * 200
    assert [r.matches for r in store.list_for_user("u0-0")] == [["a"]]


def test_record_from_row_accepts_json_strings():
    rec = MatchRecord.from_row(
        {
            "user_id": "x",
            "cycle_id": "2026-W42",
            "matches": '["a", "b"]',
            "revealed": "[true, false]",
            "chat_unlocked": None,
            "created_at": NOW,
            "expires_at": NOW,
        }
    )
    assert rec.matches == ["a", "b"]
    assert rec.revealed == [True, False]
    assert rec.chat_unlocked is None


class _Result:
    def __init__(self, row=None, rows=None):
        self._row = row
        self._rows = rows or []

    def mappings(self):
        return self

    def first(self):
        return self._row

    def all(self):
        return self._rows


class _FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls: list[tuple[str, dict]] = []
        self.commits = 0
        self.rollbacks = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, stmt, params=None):
        sql = str(stmt)
        self.calls.append((sql, params or {}))
        for key, result in self.responses:
            if key in sql:
                return result
        return _Result()

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def _existing_row(matches, revealed, chat=None):
    return {
        "user_id": "x",
        "cycle_id": "2026-W42",
        "matches": matches,
        "revealed": revealed,
        "chat_unlocked": chat,
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=7),
    }


def test_sql_upsert_inserts_when_absent():
    session = _FakeSession([("INSERT INTO weekly_match", _Result(row=("x",)))])
    store = SqlMatchStore(session_factory=lambda: session)
    rec = store.upsert("x", "2026-W42", ["a", "x", "b"], NOW)

    assert rec.matches == ["a", "b"]
    assert session.commits == 1
    sql, params = session.calls[0]
    assert "ON CONFLICT (user_id, cycle_id) DO NOTHING" in sql
    assert json.loads(params["matches"]) == ["a", "b"]
    assert json.loads(params["revealed"]) == [False, False]
    assert len(session.calls) == 1


def test_sql_upsert_appends_under_row_lock():
    session = _FakeSession(
        [
            ("INSERT INTO weekly_match", _Result(row=None)),
            ("FOR UPDATE", _Result(row=_existing_row(["a"], [True], [False]))),
        ]
    )
    store = SqlMatchStore(session_factory=lambda: session)
    rec = store.upsert("x", "2026-W42", ["a", "b", "c", "d"], NOW)

    assert rec.matches == ["a", "b", "c"]
    assert rec.revealed == [True, False, False]
    assert rec.chat_unlocked == [False, False, False]
    update_sql, update_params = session.calls[-1]
    assert "UPDATE weekly_match" in update_sql
    assert json.loads(update_params["matches"]) == ["a", "b", "c"]
    assert json.loads(update_params["chat_unlocked"]) == [False, False, False]
    assert session.commits == 1


def test_sql_upsert_noop_rolls_back_and_returns_current():
    session = _FakeSession(
        [
            ("INSERT INTO weekly_match", _Result(row=None)),
            ("FOR UPDATE", _Result(row=_existing_row(["a", "b", "c"], [False, False, False]))),
        ]
    )
    store = SqlMatchStore(session_factory=lambda: session)
    rec = store.upsert("x", "2026-W42", ["d"], NOW)

    assert rec.matches == ["a", "b", "c"]
    assert session.rollbacks == 1
    assert session.commits == 0
    assert not any("UPDATE weekly_match" in sql for sql, _ in session.calls)


def test_sql_upsert_with_no_candidates_only_reads():
    session = _FakeSession([("SELECT user_id, cycle_id", _Result(row=None))])
    store = SqlMatchStore(session_factory=lambda: session)
    assert store.upsert("x", "2026-W42", ["x"], NOW) is None
    assert all(sql.strip().startswith("SELECT") for sql, _ in session.calls)


def test_sql_list_for_user_is_bounded_and_newest_first():
    session = _FakeSession([("WHERE user_id = :user_id", _Result(rows=[_existing_row(["a"], [False])]))])
    store = SqlMatchStore(session_factory=lambda: session)
    records = store.list_for_user("x", limit=5)
    assert [r.matches for r in records] == [["a"]]
    sql, params = session.calls[0]
    assert "ORDER BY created_at DESC" in sql
    assert params["limit"] == 5
