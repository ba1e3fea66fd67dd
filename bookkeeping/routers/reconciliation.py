from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..models import ReconciliationStatus
from ..schemas import (
    AccountReconciliationStatus,
    ReconciliationBatchRequest,
    ReconciliationCheckResult,
    ReconciliationIssueOut,
)
from ..services.reconciliation_service import ReconciliationService


router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/issues", response_model=list[ReconciliationIssueOut])
def list_issues(
    status: Optional[ReconciliationStatus] = Query(ReconciliationStatus.OPEN),
    account_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    return ReconciliationService(db).list_issues(status, account_id)


@router.post("/check", response_model=list[ReconciliationCheckResult])
def check_accounts(
    payload: ReconciliationBatchRequest,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    results = ReconciliationService(db).run_batch(payload.account_ids)
    cache.invalidate("reconciliation")
    return results


@router.post("/check/{account_id}", response_model=ReconciliationCheckResult)
def check_account(
    account_id: int,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    result = ReconciliationService(db).run_check(account_id)
    cache.invalidate("reconciliation")
    return result


@router.get("/status/{account_id}", response_model=AccountReconciliationStatus)
def account_status(account_id: int, db: Session = Depends(get_db)):
    return ReconciliationService(db).status(account_id)


@router.post("/issues/{issue_id}/resolve", response_model=ReconciliationIssueOut)
def resolve_issue(issue_id: int, db: Session = Depends(get_db)):
    return ReconciliationService(db).resolve(issue_id)


@router.post("/issues/{issue_id}/ignore", response_model=ReconciliationIssueOut)
def ignore_issue(issue_id: int, db: Session = Depends(get_db)):
    return ReconciliationService(db).ignore(issue_id)
