from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..schemas import (
    PeriodicExecutionResult,
    PeriodicTaskCreate,
    PeriodicTaskOut,
    PeriodicTaskUpdate,
)
from ..services.recurrence_service import RecurrenceService


router = APIRouter(prefix="/periodic-tasks", tags=["periodic"])


@router.get("", response_model=list[PeriodicTaskOut])
def list_tasks(is_active: Optional[bool] = Query(None), db: Session = Depends(get_db)):
    return RecurrenceService(db).list(is_active)


@router.post("", response_model=PeriodicTaskOut, status_code=201)
def create_task(payload: PeriodicTaskCreate, db: Session = Depends(get_db)):
    return RecurrenceService(db).create(payload.model_dump())


@router.post("/execute", response_model=PeriodicExecutionResult)
def execute_due_tasks(
    today: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    result = RecurrenceService(db).execute_due(today)
    if result.created_transactions:
        cache.invalidate_ledger()
    return result


@router.patch("/{task_id}", response_model=PeriodicTaskOut)
def update_task(task_id: int, payload: PeriodicTaskUpdate, db: Session = Depends(get_db)):
    return RecurrenceService(db).update(task_id, payload.model_dump(exclude_unset=True))


@router.patch("/{task_id}/active", response_model=PeriodicTaskOut)
def toggle_task(task_id: int, is_active: bool = Query(...), db: Session = Depends(get_db)):
    return RecurrenceService(db).set_active(task_id, is_active)


@router.delete("/{task_id}", status_code=204)
def delete_task(task_id: int, db: Session = Depends(get_db)):
    RecurrenceService(db).delete(task_id)
    return Response(status_code=204)
