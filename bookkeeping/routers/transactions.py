from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..models import TransactionType
from ..schemas import (
    TransactionCreate,
    TransactionLinkRequest,
    TransactionListOut,
    TransactionOut,
    TransactionUpdate,
)
from ..services.transaction_service import TransactionService


router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("", response_model=TransactionListOut)
def list_transactions(
    response: Response,
    account_id: Optional[int] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    transaction_type: Optional[TransactionType] = Query(None),
    needs_review: Optional[bool] = Query(None),
    is_large_expense: Optional[bool] = Query(None),
    limit: Optional[int] = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = TransactionService(db).list(
        account_id=account_id,
        start=start,
        end=end,
        transaction_type=transaction_type,
        needs_review=needs_review,
        is_large_expense=is_large_expense,
        limit=limit,
        offset=offset,
    )
    response.headers["X-Total-Count"] = str(total)
    return TransactionListOut(items=[TransactionOut.model_validate(r) for r in rows], total=total)


@router.post("", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionCreate,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    row = TransactionService(db).create(payload.model_dump())
    cache.invalidate_ledger()
    return row


@router.get("/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return TransactionService(db).get(transaction_id)


@router.patch("/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    row = TransactionService(db).update(transaction_id, payload.model_dump(exclude_unset=True))
    cache.invalidate_ledger()
    return row


@router.delete("/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    TransactionService(db).delete(transaction_id)
    cache.invalidate_ledger()
    return Response(status_code=204)


@router.post("/{transaction_id}/link", response_model=TransactionOut)
def link_transaction(transaction_id: int, payload: TransactionLinkRequest, db: Session = Depends(get_db)):
    return TransactionService(db).link(transaction_id, payload.linked_transaction_id, payload.link_type)


@router.delete("/{transaction_id}/link", response_model=TransactionOut)
def unlink_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return TransactionService(db).unlink(transaction_id)
