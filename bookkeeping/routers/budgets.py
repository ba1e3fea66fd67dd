from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..models import BudgetPlanStatus, today_local
from ..schemas import (
    BudgetDashboardOut,
    BudgetPeriodRecordOut,
    BudgetPlanCreate,
    BudgetPlanDetailOut,
    BudgetPlanOut,
    BudgetPlanUpdate,
    BudgetRecalculationCommit,
    BudgetRecalculationCommitResult,
    BudgetRecalculationItem,
    BudgetRecalculationRequest,
    BudgetRestartRequest,
)
from ..services.budget_service import BudgetService


router = APIRouter(prefix="/budgets", tags=["budgets"])


def _detail(svc: BudgetService, plan, as_of: Optional[date]) -> BudgetPlanDetailOut:
    records = svc.round_records(plan)
    current = svc.current_record(plan, as_of or today_local())
    return BudgetPlanDetailOut(
        **BudgetPlanOut.model_validate(plan).model_dump(),
        records=[BudgetPeriodRecordOut.model_validate(r) for r in records],
        current_period=BudgetPeriodRecordOut.model_validate(current) if current is not None else None,
    )


@router.get("", response_model=list[BudgetPlanOut])
def list_plans(
    status: Optional[BudgetPlanStatus] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    return cache.get_or_load(
        "budgets",
        ("list", status),
        lambda: [BudgetPlanOut.model_validate(p) for p in BudgetService(db).list_plans(status)],
    )


@router.post("", response_model=BudgetPlanDetailOut, status_code=201)
def create_plan(
    payload: BudgetPlanCreate,
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    svc = BudgetService(db)
    plan = svc.create_plan(payload.model_dump(), as_of)
    cache.invalidate("budgets", "dashboard")
    return _detail(svc, plan, as_of)


@router.get("/dashboard", response_model=BudgetDashboardOut)
def budget_dashboard(
    as_of: Optional[date] = Query(None),
    currency: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    target = currency.upper() if currency else None
    return cache.get_or_load(
        "dashboard", (as_of, target), lambda: BudgetService(db).dashboard_summary(as_of, target)
    )


@router.post("/refresh")
def refresh_all_plans(
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    expired, refreshed = BudgetService(db).refresh_all(as_of)
    cache.invalidate("budgets", "dashboard")
    return {"expired": expired, "refreshed": refreshed}


@router.post("/recalculate/preview", response_model=list[BudgetRecalculationItem])
def preview_recalculation(payload: BudgetRecalculationRequest, db: Session = Depends(get_db)):
    return BudgetService(db).plan_recalculation(payload.plan_ids, payload.as_of)


@router.post("/recalculate/commit", response_model=BudgetRecalculationCommitResult)
def commit_recalculation(
    payload: BudgetRecalculationCommit,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    updated = BudgetService(db).commit_recalculation(payload.items)
    cache.invalidate("budgets", "dashboard")
    return BudgetRecalculationCommitResult(updated=updated)


@router.get("/{plan_id}", response_model=BudgetPlanDetailOut)
def get_plan(plan_id: int, as_of: Optional[date] = Query(None), db: Session = Depends(get_db)):
    svc = BudgetService(db)
    return _detail(svc, svc.get_plan(plan_id), as_of)


@router.patch("/{plan_id}", response_model=BudgetPlanDetailOut)
def update_plan(
    plan_id: int,
    payload: BudgetPlanUpdate,
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    svc = BudgetService(db)
    plan = svc.update_plan(plan_id, payload.model_dump(exclude_unset=True), as_of)
    cache.invalidate("budgets", "dashboard")
    return _detail(svc, plan, as_of)


@router.delete("/{plan_id}", status_code=204)
def delete_plan(
    plan_id: int,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    BudgetService(db).delete_plan(plan_id)
    cache.invalidate("budgets", "dashboard")
    return Response(status_code=204)


@router.post("/{plan_id}/refresh", response_model=BudgetPlanDetailOut)
def refresh_plan(
    plan_id: int,
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    svc = BudgetService(db)
    plan = svc.refresh_plan(plan_id, as_of)
    cache.invalidate("budgets", "dashboard")
    return _detail(svc, plan, as_of)


@router.post("/{plan_id}/pause", response_model=BudgetPlanOut)
def pause_plan(
    plan_id: int,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    plan = BudgetService(db).pause(plan_id)
    cache.invalidate("budgets", "dashboard")
    return plan


@router.post("/{plan_id}/resume", response_model=BudgetPlanDetailOut)
def resume_plan(
    plan_id: int,
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    svc = BudgetService(db)
    plan = svc.resume(plan_id, as_of)
    cache.invalidate("budgets", "dashboard")
    return _detail(svc, plan, as_of)


@router.post("/{plan_id}/restart", response_model=BudgetPlanDetailOut)
def restart_plan(
    plan_id: int,
    payload: BudgetRestartRequest,
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    svc = BudgetService(db)
    plan = svc.restart(plan_id, start_date=payload.start_date, hard_limit=payload.hard_limit, as_of=as_of)
    cache.invalidate("budgets", "dashboard")
    return _detail(svc, plan, as_of)
