from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CycleOut(BaseModel):
    cycle_id: str
    prompt: str
    release_at: datetime
    match_at: datetime
    status: str
    active: bool
    activated_at: datetime | None = None
    matches_generated_at: datetime | None = None


class MatchRecordOut(BaseModel):
    user_id: str
    cycle_id: str
    matches: list[str] = Field(default_factory=list)
    revealed: list[bool] = Field(default_factory=list)
    chat_unlocked: list[bool] | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None


class RunSummaryOut(BaseModel):
    cycle_id: str | None
    trigger: str
    status: str
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


class CycleMatchesOut(BaseModel):
    cycle_id: str
    records: list[MatchRecordOut]
    audit: dict[str, Any]


class UserMatchesOut(BaseModel):
    user_id: str
    records: list[MatchRecordOut]
