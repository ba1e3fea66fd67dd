from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..schemas import CalibrationCreate, CalibrationOut
from ..services.calibration_service import CalibrationService


router = APIRouter(prefix="/calibrations", tags=["calibrations"])


@router.get("", response_model=list[CalibrationOut])
def list_calibrations(
    account_id: int = Query(..., gt=0),
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
):
    return CalibrationService(db).list(account_id, limit)


@router.post("", response_model=CalibrationOut, status_code=201)
def create_calibration(
    payload: CalibrationCreate,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    row = CalibrationService(db).create(
        payload.account_id,
        payload.balance,
        payload.calibrated_at,
        source=payload.source,
        is_opening=payload.is_opening,
        note=payload.note,
    )
    cache.invalidate_ledger()
    return row


@router.delete("/{calibration_id}", status_code=204)
def delete_calibration(
    calibration_id: int,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    CalibrationService(db).delete(calibration_id)
    cache.invalidate_ledger()
    return Response(status_code=204)
