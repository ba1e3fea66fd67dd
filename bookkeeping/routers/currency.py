from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.cache import ReadCache, get_read_cache
from ..core.database import get_db
from ..schemas import ConversionOut, CurrencyRateIn, CurrencyRateOut
from ..services.currency_service import CurrencyService, rate_for


router = APIRouter(prefix="/currency", tags=["currency"])


@router.get("/rates", response_model=list[CurrencyRateOut])
def list_rates(db: Session = Depends(get_db)):
    return [
        CurrencyRateOut(from_currency=src, to_currency=dst, rate=rate)
        for src, dst, rate in CurrencyService(db).list_rates()
    ]


@router.put("/rates", response_model=CurrencyRateOut)
def upsert_rate(
    payload: CurrencyRateIn,
    db: Session = Depends(get_db),
    cache: ReadCache = Depends(get_read_cache),
):
    row = CurrencyService(db).upsert_rate(payload.from_currency, payload.to_currency, payload.rate)
    # every converted total depends on rates
    cache.invalidate()
    return CurrencyRateOut(from_currency=row.from_currency, to_currency=row.to_currency, rate=float(row.rate))


@router.get("/convert", response_model=ConversionOut)
def convert_amount(
    amount: float = Query(...),
    from_currency: str = Query(..., min_length=1),
    to_currency: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
):
    src, dst = from_currency.strip().upper(), to_currency.strip().upper()
    rate = rate_for(src, dst, CurrencyService(db).get_rates())
    return ConversionOut(amount=amount, from_currency=src, to_currency=dst, rate=rate, converted=round(amount * rate, 4))
