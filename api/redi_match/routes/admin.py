from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .. import repo
from ..deps import require_admin_token
from ..schemas import CycleMatchesOut, CycleOut, MatchRecordOut, RunSummaryOut, UserMatchesOut
from ..services import finalizer
from ..services.errors import CycleBoundaryError, CycleStateError
from ..services.match_store import SqlMatchStore
from ..services.matching import audit_cycle_mutuality

router = APIRouter(dependencies=[Depends(require_admin_token)])


def _json(data: Any) -> Any:
    return jsonable_encoder(data)


def _match_store() -> SqlMatchStore:
    return SqlMatchStore()


@router.post("/admin/matches/run-weekly", response_model=RunSummaryOut)
def run_weekly_matching(trigger: str = "manual", dry_run: bool = False) -> Any:
    if trigger not in finalizer.TRIGGERS:
        raise HTTPException(status_code=400, detail=f"trigger must be one of {', '.join(finalizer.TRIGGERS)}")
    summary = finalizer.run_weekly_matching(now=datetime.now(timezone.utc), trigger=trigger, dry_run=dry_run)
    if summary.status == "aborted":
        return JSONResponse(status_code=503, content=_json(summary.to_dict()))
    return summary.to_dict()


@router.get("/admin/matches/cycle/{cycle_id}", response_model=CycleMatchesOut)
def get_cycle_matches(cycle_id: str) -> dict[str, Any]:
    records = _match_store().list_for_cycle(cycle_id)
    if not records and repo.get_cycle(cycle_id) is None:
        raise HTTPException(status_code=404, detail="Cycle not found")
    return {
        "cycle_id": cycle_id,
        "records": [asdict(r) for r in records],
        "audit": audit_cycle_mutuality(records),
    }


@router.get("/admin/matches/user/{user_id}", response_model=UserMatchesOut)
def get_user_matches(user_id: str, cycle_id: str | None = None) -> dict[str, Any]:
    store = _match_store()
    if cycle_id:
        record = store.get(user_id, cycle_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Match record not found")
        records = [record]
    else:
        records = store.list_for_user(user_id)
    return {"user_id": user_id, "records": [asdict(r) for r in records]}


@router.get("/admin/cycles/active", response_model=CycleOut)
def get_active_cycle() -> dict[str, Any]:
    cycle = repo.get_active_cycle()
    if cycle is None:
        raise HTTPException(status_code=404, detail="No active cycle")
    return asdict(cycle)


@router.post("/admin/cycles/{cycle_id}/activate", response_model=CycleOut)
def activate_cycle(cycle_id: str) -> dict[str, Any]:
    try:
        cycle = finalizer.activate_weekly_cycle(now=datetime.now(timezone.utc), trigger="manual", cycle_id=cycle_id)
    except (CycleStateError, CycleBoundaryError) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if cycle is None:
        raise HTTPException(status_code=404, detail="Cycle not found")
    return asdict(cycle)
