from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import text

from ..database import SessionLocal

logger = logging.getLogger(__name__)


def match_drop_key(cycle_id: str, user_id: str) -> str:
    return f"match_drop:{cycle_id}:{user_id}"


def enqueue_match_drop_notifications(
    cycle_id: str,
    recipients: list[tuple[str, int]],
    now: datetime,
    session_factory: Callable[[], Any] = SessionLocal,
) -> int:
    """Queue one match-drop payload per recipient; returns how many were new.

    Delivery is someone else's job. Each row is keyed by
    ``match_drop:<cycle>:<user>`` so a re-run never queues a second copy,
    and a failed insert for one user does not stop the rest.
    """
    queued = 0
    for user_id, match_count in recipients:
        if match_count <= 0:
            continue
        try:
            with session_factory() as db:
                inserted = db.execute(
                    text(
                        """
                        INSERT INTO notifications_outbox (id, user_id, kind, payload, idempotency_key, created_at)
                        VALUES (:id, :user_id, 'match_drop', CAST(:payload AS jsonb), :key, :now)
                        ON CONFLICT (idempotency_key) DO NOTHING
                        RETURNING id
                        """
                    ),
                    {
                        "id": str(uuid.uuid4()),
                        "user_id": user_id,
                        "payload": json.dumps({"cycle_id": cycle_id, "match_count": int(match_count)}),
                        "key": match_drop_key(cycle_id, user_id),
                        "now": now,
                    },
                ).first()
                db.commit()
        except Exception:
            logger.exception("[NOTIFY] could not queue match drop for %s in %s", user_id, cycle_id)
            continue
        if inserted is not None:
            queued += 1

    logger.info("[NOTIFY] %s: queued %s of %s match-drop notifications", cycle_id, queued, len(recipients))
    return queued
