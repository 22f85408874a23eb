import json
from datetime import datetime, timezone

from redi_match.services.notifications import enqueue_match_drop_notifications, match_drop_key

NOW = datetime(2026, 10, 16, 14, 0, tzinfo=timezone.utc)


class _Result:
    def __init__(self, row):
        self._row = row

    def first(self):
        return self._row


class _Outbox:
    """Session stand-in that honours the idempotency key like the unique index."""

    def __init__(self, fail_for=()):
        self.rows: dict[str, dict] = {}
        self.fail_for = set(fail_for)
        self.commits = 0

    def __call__(self):
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, stmt, params):
        assert "ON CONFLICT (idempotency_key) DO NOTHING" in str(stmt)
        if params["user_id"] in self.fail_for:
            raise ConnectionError("outbox unavailable")
        if params["key"] in self.rows:
            return _Result(None)
        self.rows[params["key"]] = params
        return _Result((params["id"],))

    def commit(self):
        self.commits += 1


def test_key_is_scoped_to_cycle_and_user():
    assert match_drop_key("2026-W42", "u1") == "match_drop:2026-W42:u1"


def test_enqueue_writes_one_payload_per_recipient():
    outbox = _Outbox()
    queued = enqueue_match_drop_notifications("2026-W42", [("x", 2), ("y", 1)], NOW, session_factory=outbox)

    assert queued == 2
    payload = json.loads(outbox.rows["match_drop:2026-W42:x"]["payload"])
    assert payload == {"cycle_id": "2026-W42", "match_count": 2}


def test_rerun_does_not_queue_twice():
    outbox = _Outbox()
    enqueue_match_drop_notifications("2026-W42", [("x", 2)], NOW, session_factory=outbox)
    again = enqueue_match_drop_notifications("2026-W42", [("x", 3)], NOW, session_factory=outbox)
    assert again == 0
    assert len(outbox.rows) == 1


def test_zero_count_recipients_are_ignored():
    outbox = _Outbox()
    assert enqueue_match_drop_notifications("2026-W42", [("x", 0)], NOW, session_factory=outbox) == 0
    assert outbox.rows == {}


def test_one_failed_insert_does_not_stop_the_rest():
    outbox = _Outbox(fail_for={"x"})
    queued = enqueue_match_drop_notifications("2026-W42", [("x", 1), ("y", 1)], NOW, session_factory=outbox)
    assert queued == 1
    assert list(outbox.rows) == ["match_drop:2026-W42:y"]
