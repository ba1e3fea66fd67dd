from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..schemas import CalibrationReminder, CheckinResult
from ..services.checkin_service import CheckinService


router = APIRouter(prefix="/checkin", tags=["checkin"])


@router.post("", response_model=CheckinResult)
def daily_checkin(
    today: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    result = CheckinService(db).check_in(today)
    cache.invalidate()
    return result


@router.get("/reminders", response_model=list[CalibrationReminder])
def calibration_reminders(today: Optional[date] = Query(None), db: Session = Depends(get_db)):
    return CheckinService(db).calibration_reminders(today)
