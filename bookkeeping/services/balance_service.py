"""Point-in-time balances derived from the nearest calibration plus ledger deltas."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..core.exceptions import IntegrityViolationError, NotFoundError
from ..utils.dates import end_of_day
from .calibration_service import CalibrationService
from .currency_service import CurrencyService, convert

logger = structlog.get_logger(__name__)


class BalanceService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.calibrations = CalibrationService(db)

    def _sum_leg(self, account_id: int, incoming: bool, start: datetime | None, end: datetime) -> float:
        """Sum postings touching the account in ``(start, end]``.

        Credits use ``to_amount`` and debits ``from_amount`` when set, else ``amount``.
        """
        T = models.Transaction
        if incoming:
            value = func.coalesce(T.to_amount, T.amount)
            leg = T.to_account_id == account_id
        else:
            value = func.coalesce(T.from_amount, T.amount)
            leg = T.from_account_id == account_id
        q = self.db.query(func.coalesce(func.sum(value), 0)).filter(leg, T.occurred_at <= end)
        if start is not None:
            q = q.filter(T.occurred_at > start)
        return float(q.scalar() or 0)

    def ledger_delta(self, account_id: int, start: datetime | None, end: datetime) -> float:
        """Net inflow minus outflow over ``(start, end]``; ``start=None`` means from the beginning."""
        return self._sum_leg(account_id, True, start, end) - self._sum_leg(account_id, False, start, end)

    def balance_at(self, account_id: int, as_of: date | datetime) -> float:
        moment = end_of_day(as_of)

        anchor = self.calibrations.latest_on_or_before(account_id, moment)
        if anchor is not None:
            balance = float(anchor.balance) + self.ledger_delta(account_id, anchor.calibrated_at, moment)
            return round(balance, 4)

        anchor = self.calibrations.earliest_after(account_id, moment)
        if anchor is not None:
            balance = float(anchor.balance) - self.ledger_delta(account_id, moment, anchor.calibrated_at)
            return round(balance, 4)

        return round(self.ledger_delta(account_id, None, moment), 4)

    def balances_at(self, account_ids: Iterable[int], as_of: date | datetime) -> dict[int, float]:
        """Batch lookup; an account whose lookup fails contributes 0."""
        result: dict[int, float] = {}
        for account_id in account_ids:
            try:
                result[account_id] = self.balance_at(account_id, as_of)
            except SQLAlchemyError:
                logger.exception("balance_lookup_failed", account_id=account_id)
                self.db.rollback()
                result[account_id] = 0.0
        return result

    def _active_real_leaves(self, account: models.Account) -> list[models.Account]:
        if not account.is_active:
            return []
        if not account.is_group:
            return [account] if account.account_class == models.AccountClass.REAL else []
        leaves: list[models.Account] = []
        for child in self.db.query(models.Account).filter(models.Account.parent_id == account.id).order_by(models.Account.id):
            leaves.extend(self._active_real_leaves(child))
        return leaves

    def history(
        self,
        account_id: int,
        start: date | None = None,
        end: date | None = None,
        step: int = 1,
    ) -> tuple[str | None, list[tuple[date, float]]]:
        """End-of-day balances from ``start`` to ``end`` every ``step`` days.

        Groups sum their active real leaves. Leaves in more than one currency are
        converted to the base currency. Returns ``(currency, [(day, balance), ...])``.
        """
        account = self.db.get(models.Account, account_id)
        if account is None:
            raise NotFoundError("Account")
        end = end or models.today_local()
        start = start or end - timedelta(days=settings.BALANCE_HISTORY_DEFAULT_DAYS)
        if step < 1:
            raise IntegrityViolationError("step must be at least one day")
        if start > end:
            raise IntegrityViolationError("start must not be after end")
        if (end - start).days // step + 1 > settings.BALANCE_HISTORY_MAX_POINTS:
            raise IntegrityViolationError(f"At most {settings.BALANCE_HISTORY_MAX_POINTS} points per request")

        leaves = self._active_real_leaves(account)
        currencies = {leaf.currency or settings.BASE_CURRENCY for leaf in leaves}
        if len(currencies) == 1:
            currency = currencies.pop()
        elif currencies:
            currency = settings.BASE_CURRENCY
        else:
            currency = account.currency
        rates = CurrencyService(self.db).get_rates() if len(leaves) > 1 else {}

        points: list[tuple[date, float]] = []
        day = start
        while day <= end:
            total = 0.0
            for leaf in leaves:
                balance = self.balance_at(leaf.id, day)
                total += convert(balance, leaf.currency, currency, rates) if rates else balance
            points.append((day, round(total, 4)))
            day += timedelta(days=step)
        logger.debug("balance_history_built", account_id=account_id, points=len(points), currency=currency)
        return currency, points
