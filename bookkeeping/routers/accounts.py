from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..models import AccountClass, now_local_naive
from ..schemas import (
    AccountActiveToggle,
    AccountBalanceOut,
    AccountCreate,
    AccountMergeRequest,
    AccountMergeResult,
    AccountOut,
    AccountTreeNode,
    AccountUpdate,
    AccountWithBalance,
    BalanceHistoryOut,
    BalancePoint,
    CurrencySubAccountRequest,
    CurrencySubAccountResult,
)
from ..services.account_service import AccountService
from ..services.balance_service import BalanceService
from ..utils.dates import parse_as_of


router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("", response_model=list[AccountWithBalance])
def list_accounts(
    is_active: Optional[bool] = Query(None, description="Filter by active flag when provided"),
    account_class: Optional[AccountClass] = Query(None),
    as_of: Optional[date] = Query(None, description="Balance date; defaults to now"),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    def _load() -> list[AccountWithBalance]:
        svc = AccountService(db)
        rows = svc.get_all(is_active=is_active, account_class=account_class)
        balances = svc.leaf_balances(rows, as_of or now_local_naive())
        return [
            AccountWithBalance(**AccountOut.model_validate(r).model_dump(), balance=balances.get(r.id, 0.0))
            for r in rows
        ]

    return cache.get_or_load("accounts", (is_active, account_class, as_of), _load)


@router.get("/tree", response_model=list[AccountTreeNode])
def account_tree(
    currency: Optional[str] = Query(None, description="Reporting currency for group totals"),
    as_of: Optional[date] = Query(None),
    is_active: Optional[bool] = Query(None),
    account_class: Optional[AccountClass] = Query(None),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    target = currency.upper() if currency else None
    return cache.get_or_load(
        "account_tree",
        (target, as_of, is_active, account_class),
        lambda: AccountService(db).get_tree(
            target_currency=target, as_of=as_of, is_active=is_active, account_class=account_class
        ),
    )


@router.post("", response_model=AccountOut, status_code=201)
def create_account(
    payload: AccountCreate,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    row = AccountService(db).create(payload.model_dump())
    cache.invalidate_ledger()
    return row


@router.post("/merge", response_model=AccountMergeResult)
def merge_accounts(
    payload: AccountMergeRequest,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    moved_transactions, moved_calibrations = AccountService(db).merge(payload.source_id, payload.target_id)
    cache.invalidate_ledger()
    return AccountMergeResult(
        source_id=payload.source_id,
        target_id=payload.target_id,
        moved_transactions=moved_transactions,
        moved_calibrations=moved_calibrations,
    )


@router.get("/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db)):
    return AccountService(db).get(account_id)


@router.get("/{account_id}/balance", response_model=AccountBalanceOut)
def get_account_balance(
    account_id: int,
    as_of: Optional[str] = Query(None, description="Date or timestamp; a bare date means end of day"),
    db: Session = Depends(get_db),
):
    account = AccountService(db).get(account_id)
    try:
        moment = parse_as_of(as_of) if as_of else now_local_naive()
    except ValueError:
        raise HTTPException(status_code=422, detail="as_of must be YYYY-MM-DD or an ISO timestamp")
    balance = BalanceService(db).balance_at(account.id, moment) if account.is_real_leaf else 0.0
    return AccountBalanceOut(account_id=account.id, as_of=moment, balance=balance, currency=account.currency)


@router.get("/{account_id}/balance-history", response_model=BalanceHistoryOut)
def get_balance_history(
    account_id: int,
    start: Optional[date] = Query(None, description="First day; defaults to 30 days before end"),
    end: Optional[date] = Query(None, description="Last day; defaults to today"),
    step: int = Query(1, ge=1, description="Days between points"),
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    def _load() -> BalanceHistoryOut:
        currency, points = BalanceService(db).history(account_id, start, end, step)
        return BalanceHistoryOut(
            account_id=account_id,
            currency=currency,
            points=[BalancePoint(as_of=day, balance=balance) for day, balance in points],
        )

    return cache.get_or_load("balances", ("history", account_id, start, end, step), _load)


@router.post("/{account_id}/currency-subaccounts", response_model=CurrencySubAccountResult)
def add_currency_subaccount(
    account_id: int,
    payload: CurrencySubAccountRequest,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    created, moved = AccountService(db).add_currency_subaccount(account_id, payload.currency)
    cache.invalidate_ledger()
    return CurrencySubAccountResult(account_id=account_id, created=created, moved_transactions=moved)


@router.patch("/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    row = AccountService(db).update(account_id, payload.model_dump(exclude_unset=True))
    cache.invalidate_ledger()
    return row


@router.patch("/{account_id}/active", response_model=AccountOut)
def toggle_account_active(
    account_id: int,
    payload: AccountActiveToggle,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    row = AccountService(db).set_active(account_id, payload.is_active)
    cache.invalidate_ledger()
    return row


@router.delete("/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    AccountService(db).delete(account_id)
    cache.invalidate_ledger()
    return Response(status_code=204)
