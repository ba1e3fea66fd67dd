"""Currency conversion against a flat table of current direct rates."""

from __future__ import annotations

from typing import Mapping

import structlog
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..core.exceptions import IntegrityViolationError

logger = structlog.get_logger(__name__)

RateTable = Mapping[str, Mapping[str, float]]


def rate_for(from_currency: str | None, to_currency: str | None, rates: RateTable) -> float:
    """Direct rate for the pair; 1.0 for identity and for unknown pairs."""
    if not from_currency or not to_currency or from_currency == to_currency:
        return 1.0
    rate = rates.get(from_currency, {}).get(to_currency)
    if rate is None:
        logger.warning("missing_rate", from_currency=from_currency, to_currency=to_currency)
        return 1.0
    return float(rate)


def convert(amount: float, from_currency: str | None, to_currency: str | None, rates: RateTable) -> float:
    """Convert ``amount``; never raises.

    Only direct pairs are used, no triangulation through a third currency. A missing
    pair logs a warning and returns the amount unchanged.
    """
    return float(amount) * rate_for(from_currency, to_currency, rates)


class CurrencyService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_rates(self) -> dict[str, dict[str, float]]:
        """Configured defaults overlaid with stored rates."""
        table: dict[str, dict[str, float]] = {src: dict(targets) for src, targets in settings.DEFAULT_RATES.items()}
        for row in self.db.query(models.CurrencyRate).all():
            table.setdefault(row.from_currency, {})[row.to_currency] = float(row.rate)
        return table

    def list_rates(self) -> list[tuple[str, str, float]]:
        rates = self.get_rates()
        return sorted((src, dst, rate) for src, targets in rates.items() for dst, rate in targets.items())

    def convert(self, amount: float, from_currency: str | None, to_currency: str | None) -> float:
        return convert(amount, from_currency, to_currency, self.get_rates())

    def upsert_rate(self, from_currency: str, to_currency: str, rate: float) -> models.CurrencyRate:
        if rate is None or float(rate) <= 0:
            raise IntegrityViolationError("Exchange rate must be positive")
        if from_currency == to_currency:
            raise IntegrityViolationError("Exchange rate needs two different currencies")
        row = (
            self.db.query(models.CurrencyRate)
            .filter(models.CurrencyRate.from_currency == from_currency, models.CurrencyRate.to_currency == to_currency)
            .first()
        )
        if row is None:
            row = models.CurrencyRate(from_currency=from_currency, to_currency=to_currency, rate=rate)
            self.db.add(row)
        else:
            row.rate = rate
        self.db.commit()
        self.db.refresh(row)
        logger.info("currency_rate_updated", from_currency=from_currency, to_currency=to_currency, rate=float(rate))
        return row
