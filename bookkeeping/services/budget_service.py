"""Budget plans and their rolling period records.

Period records are derived data: every number on them can be recomputed from the
ledger. ``refresh_plan`` writes them incrementally; ``plan_recalculation`` /
``commit_recalculation`` split a full recomputation into a reviewable diff and an
apply step.
"""

from __future__ import annotations

import statistics
from datetime import date, datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .. import models
from ..core.config import settings
from ..core.exceptions import IntegrityViolationError, InvalidStateError, LedgerError, NotFoundError
from ..schemas import (
    BudgetDashboardItem,
    BudgetDashboardOut,
    BudgetPeriodValues,
    BudgetRecalculationItem,
)
from ..utils.dates import end_of_day, period_window, shift_period_start
from .account_service import iter_descendant_ids
from .currency_service import CurrencyService, convert

logger = structlog.get_logger(__name__)

SOFT_LIMIT_WINDOW = 3
AMOUNT_EPSILON = 1e-6


def classify_indicator(
    actual: float,
    hard_limit: float,
    soft_limit: Optional[float],
    trailing: Iterable[float] = (),
) -> models.IndicatorStatus:
    """Verdict for an elapsed period.

    red when above max(hard, soft); star when at/below the soft reference and in the
    best quartile of the trailing periods plus this one; green otherwise.
    """
    if actual > max(hard_limit, soft_limit or 0):
        return models.IndicatorStatus.RED
    if soft_limit is not None and actual <= soft_limit:
        sample = [*trailing, actual]
        if len(sample) >= 2:
            first_quartile = statistics.quantiles(sample, n=4)[0]
            if actual <= first_quartile:
                return models.IndicatorStatus.STAR
    return models.IndicatorStatus.GREEN


class _PlanScope:
    """Resolved account sets and rates used to match postings for one plan."""

    def __init__(self, target_ids: set[int], filter_ids: set[int], rates: dict[str, dict[str, float]]) -> None:
        self.target_ids = target_ids
        self.filter_ids = filter_ids
        self.rates = rates


class BudgetService:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ----- plan CRUD -----

    def get_plan(self, plan_id: int) -> models.BudgetPlan:
        plan = self.db.get(models.BudgetPlan, plan_id)
        if plan is None:
            raise NotFoundError("Budget plan")
        return plan

    def list_plans(self, status: Optional[models.BudgetPlanStatus] = None) -> list[models.BudgetPlan]:
        q = self.db.query(models.BudgetPlan)
        if status is not None:
            q = q.filter(models.BudgetPlan.status == status)
        return q.order_by(models.BudgetPlan.id).all()

    def round_records(self, plan: models.BudgetPlan) -> list[models.BudgetPeriodRecord]:
        return (
            self.db.query(models.BudgetPeriodRecord)
            .filter(
                models.BudgetPeriodRecord.plan_id == plan.id,
                models.BudgetPeriodRecord.round_number == plan.round_number,
            )
            .order_by(models.BudgetPeriodRecord.period_index)
            .all()
        )

    def current_record(self, plan: models.BudgetPlan, as_of: date) -> models.BudgetPeriodRecord | None:
        records = self.round_records(plan)
        for record in records:
            if record.period_start <= as_of <= record.period_end:
                return record
        return records[-1] if records else None

    def _round_end(self, start: date, period: models.BudgetPeriodKind | str) -> date:
        return period_window(start, models.BudgetPeriodKind(period).value, settings.BUDGET_PERIODS_PER_ROUND)[1]

    def _check_accounts(self, ids: Iterable[int]) -> None:
        ids = set(ids)
        if not ids:
            return
        found = {row[0] for row in self.db.query(models.Account.id).filter(models.Account.id.in_(ids)).all()}
        missing = ids - found
        if missing:
            raise IntegrityViolationError(f"Unknown accounts: {sorted(missing)}")

    def _check_unique(self, plan_type: models.BudgetPlanType, category_id: Optional[int], exclude_id: Optional[int] = None) -> None:
        q = self.db.query(models.BudgetPlan.id).filter(models.BudgetPlan.plan_type == plan_type)
        if plan_type == models.BudgetPlanType.CATEGORY:
            q = q.filter(
                models.BudgetPlan.category_account_id == category_id,
                models.BudgetPlan.status == models.BudgetPlanStatus.ACTIVE,
            )
            message = "An active plan already exists for this category"
        else:
            q = q.filter(models.BudgetPlan.status != models.BudgetPlanStatus.EXPIRED)
            message = "A total budget plan already exists"
        if exclude_id is not None:
            q = q.filter(models.BudgetPlan.id != exclude_id)
        if q.first() is not None:
            raise InvalidStateError(message)

    def create_plan(self, payload: dict, as_of: Optional[date] = None) -> models.BudgetPlan:
        plan_type = models.BudgetPlanType(payload["plan_type"])
        category_id = payload.get("category_account_id")
        if plan_type == models.BudgetPlanType.CATEGORY:
            category = self.db.get(models.Account, category_id) if category_id is not None else None
            if category is None:
                raise IntegrityViolationError("Category plans need an existing category account")
            if category.type != models.AccountType.EXPENSE:
                raise IntegrityViolationError("Budget categories must be expense accounts")
        self._check_accounts(payload.get("included_category_ids") or [])
        self._check_accounts(payload.get("account_filter_ids") or [])
        self._check_unique(plan_type, category_id)

        plan = models.BudgetPlan(
            name=payload.get("name"),
            plan_type=plan_type,
            category_account_id=category_id,
            period=models.BudgetPeriodKind(payload["period"]),
            hard_limit=payload["hard_limit"],
            limit_currency=payload.get("limit_currency") or settings.BASE_CURRENCY,
            soft_limit_enabled=payload.get("soft_limit_enabled", True),
            account_filter_mode=models.AccountFilterMode(payload.get("account_filter_mode") or "all"),
            account_filter_ids=list(payload.get("account_filter_ids") or []),
            included_category_ids=list(payload.get("included_category_ids") or []),
            start_date=payload["start_date"],
            end_date=self._round_end(payload["start_date"], payload["period"]),
            status=models.BudgetPlanStatus.ACTIVE,
            round_number=1,
        )
        self.db.add(plan)
        self.db.flush()
        logger.info("budget_plan_created", plan_id=plan.id, plan_type=plan_type.value, period=plan.period.value)
        return self.refresh_plan(plan.id, as_of)

    def update_plan(self, plan_id: int, patch: dict, as_of: Optional[date] = None) -> models.BudgetPlan:
        as_of = as_of or models.today_local()
        plan = self.get_plan(plan_id)
        if not patch:
            return plan
        self._check_accounts(patch.get("included_category_ids") or [])
        self._check_accounts(patch.get("account_filter_ids") or [])

        new_period = patch.pop("period", None)
        new_start = patch.pop("start_date", None)
        if patch.get("account_filter_mode") is not None:
            patch["account_filter_mode"] = models.AccountFilterMode(patch["account_filter_mode"])
        for key, value in patch.items():
            if value is not None:
                setattr(plan, key, value)

        if "hard_limit" in patch and patch["hard_limit"] is not None:
            for record in self.round_records(plan):
                if record.period_end >= as_of:
                    record.hard_limit = patch["hard_limit"]

        if new_period is not None or new_start is not None:
            # a new period grid cannot reuse the old records, so open a new round
            plan.period = models.BudgetPeriodKind(new_period or plan.period)
            plan.start_date = new_start or as_of
            plan.end_date = self._round_end(plan.start_date, plan.period)
            plan.round_number += 1
            if plan.status == models.BudgetPlanStatus.EXPIRED:
                plan.status = models.BudgetPlanStatus.ACTIVE
            logger.info("budget_plan_round_reset", plan_id=plan.id, round_number=plan.round_number)

        self.db.flush()
        return self.refresh_plan(plan.id, as_of)

    def delete_plan(self, plan_id: int) -> None:
        plan = self.get_plan(plan_id)
        self.db.delete(plan)
        self.db.commit()
        logger.info("budget_plan_deleted", plan_id=plan_id)

    # ----- state machine -----

    def pause(self, plan_id: int) -> models.BudgetPlan:
        plan = self.get_plan(plan_id)
        if plan.status != models.BudgetPlanStatus.ACTIVE:
            raise InvalidStateError(f"Cannot pause a plan that is {plan.status.value}")
        plan.status = models.BudgetPlanStatus.PAUSED
        self.db.commit()
        self.db.refresh(plan)
        return plan

    def resume(self, plan_id: int, as_of: Optional[date] = None) -> models.BudgetPlan:
        plan = self.get_plan(plan_id)
        if plan.status != models.BudgetPlanStatus.PAUSED:
            raise InvalidStateError(f"Cannot resume a plan that is {plan.status.value}")
        if plan.category_account_id is not None:
            self._check_unique(plan.plan_type, plan.category_account_id, exclude_id=plan.id)
        plan.status = models.BudgetPlanStatus.ACTIVE
        self.db.flush()
        return self.refresh_plan(plan.id, as_of)

    def restart(
        self,
        plan_id: int,
        *,
        start_date: Optional[date] = None,
        hard_limit: Optional[float] = None,
        as_of: Optional[date] = None,
    ) -> models.BudgetPlan:
        as_of = as_of or models.today_local()
        plan = self.get_plan(plan_id)
        if plan.status != models.BudgetPlanStatus.EXPIRED:
            raise InvalidStateError("Only expired plans can be restarted")
        self._check_unique(plan.plan_type, plan.category_account_id, exclude_id=plan.id)

        if start_date is None:
            start_date = self._next_boundary(plan, as_of)
        plan.round_number += 1
        plan.start_date = start_date
        plan.end_date = self._round_end(start_date, plan.period)
        plan.status = models.BudgetPlanStatus.ACTIVE
        if hard_limit is not None:
            plan.hard_limit = hard_limit
        self.db.flush()
        logger.info("budget_plan_restarted", plan_id=plan.id, round_number=plan.round_number, start_date=start_date.isoformat())
        return self.refresh_plan(plan.id, as_of)

    def _next_boundary(self, plan: models.BudgetPlan, as_of: date) -> date:
        """First boundary of the plan's own period grid after the old round, caught up to ``as_of``."""
        kind = plan.period.value
        step = settings.BUDGET_PERIODS_PER_ROUND
        candidate = shift_period_start(plan.start_date, kind, step)
        index = step
        while shift_period_start(plan.start_date, kind, index + 1) <= as_of:
            index += 1
            candidate = shift_period_start(plan.start_date, kind, index)
        return candidate

    # ----- actuals -----

    def _scope(self, plan: models.BudgetPlan, rates: Optional[dict[str, dict[str, float]]] = None) -> _PlanScope:
        accounts = self.db.query(models.Account).all()
        if plan.plan_type == models.BudgetPlanType.CATEGORY:
            targets = iter_descendant_ids(accounts, [plan.category_account_id])
        elif plan.included_category_ids:
            targets = iter_descendant_ids(accounts, plan.included_category_ids)
        else:
            targets = {a.id for a in accounts if a.type == models.AccountType.EXPENSE}
        filter_ids: set[int] = set()
        if plan.account_filter_mode != models.AccountFilterMode.ALL and plan.account_filter_ids:
            filter_ids = iter_descendant_ids(accounts, plan.account_filter_ids)
        return _PlanScope(targets, filter_ids, rates if rates is not None else CurrencyService(self.db).get_rates())

    def compute_actual(self, plan: models.BudgetPlan, start: date, end: date, scope: Optional[_PlanScope] = None) -> float:
        """Spending matched by the plan in ``[start, end]`` converted to its limit currency."""
        scope = scope or self._scope(plan)
        if not scope.target_ids:
            return 0.0
        T = models.Transaction
        rows = (
            self.db.query(T)
            .options(selectinload(T.from_account))
            .filter(
                T.to_account_id.in_(scope.target_ids),
                T.occurred_at >= datetime.combine(start, datetime.min.time()),
                T.occurred_at <= end_of_day(end),
            )
            .all()
        )
        total = 0.0
        for tx in rows:
            source = tx.from_account
            if source.type == models.AccountType.EXPENSE:
                continue
            if plan.account_filter_mode == models.AccountFilterMode.INCLUDE and scope.filter_ids:
                if source.id not in scope.filter_ids:
                    continue
            elif plan.account_filter_mode == models.AccountFilterMode.EXCLUDE and scope.filter_ids:
                if source.id in scope.filter_ids:
                    continue
            amount = tx.from_amount if tx.from_amount is not None else tx.amount
            total += convert(float(amount), source.currency, plan.limit_currency, scope.rates)
        return round(total, 4)

    def evaluate_period(
        self,
        plan: models.BudgetPlan,
        period_index: int,
        hard_limit: float,
        as_of: date,
        scope: Optional[_PlanScope] = None,
        actuals: Optional[dict[int, float]] = None,
    ) -> BudgetPeriodValues:
        """Actual, soft limit and indicator for one period of the plan's current round."""
        scope = scope or self._scope(plan)
        actuals = {} if actuals is None else actuals
        kind = plan.period.value

        def actual_for(index: int) -> float:
            if index not in actuals:
                start, end = period_window(plan.start_date, kind, index)
                actuals[index] = self.compute_actual(plan, start, end, scope)
            return actuals[index]

        actual = actual_for(period_index)
        soft_limit: Optional[float] = None
        trailing: list[float] = []
        if plan.soft_limit_enabled and period_index > SOFT_LIMIT_WINDOW:
            trailing = [actual_for(period_index - k) for k in range(1, SOFT_LIMIT_WINDOW + 1)]
            soft_limit = round(statistics.fmean(trailing), 4)

        _, period_end = period_window(plan.start_date, kind, period_index)
        if period_end < as_of:
            indicator = classify_indicator(actual, float(hard_limit), soft_limit, trailing)
        else:
            indicator = models.IndicatorStatus.NONE
        return BudgetPeriodValues(actual_amount=actual, soft_limit=soft_limit, indicator_status=indicator)

    # ----- refresh -----

    def _ensure_records(self, plan: models.BudgetPlan, as_of: date) -> None:
        existing = {r.period_index for r in self.round_records(plan)}
        kind = plan.period.value
        for index in range(1, settings.BUDGET_PERIODS_PER_ROUND + 1):
            start, end = period_window(plan.start_date, kind, index)
            if start > as_of:
                break
            if index in existing:
                continue
            self.db.add(
                models.BudgetPeriodRecord(
                    plan_id=plan.id,
                    round_number=plan.round_number,
                    period_index=index,
                    period_start=start,
                    period_end=end,
                    actual_amount=0,
                    hard_limit=plan.hard_limit,
                    soft_limit=None,
                    indicator_status=models.IndicatorStatus.NONE,
                )
            )
        self.db.flush()

    def refresh_plan(self, plan_id: int, as_of: Optional[date] = None) -> models.BudgetPlan:
        """Create missing period records through the current period and recompute the round."""
        as_of = as_of or models.today_local()
        plan = self.get_plan(plan_id)
        if plan.status == models.BudgetPlanStatus.ACTIVE:
            self._ensure_records(plan, min(as_of, plan.end_date))
        if plan.status != models.BudgetPlanStatus.EXPIRED and as_of > plan.end_date:
            plan.status = models.BudgetPlanStatus.EXPIRED
            logger.info("budget_plan_expired", plan_id=plan.id, end_date=plan.end_date.isoformat())

        scope = self._scope(plan)
        actuals: dict[int, float] = {}
        for record in self.round_records(plan):
            values = self.evaluate_period(plan, record.period_index, float(record.hard_limit), as_of, scope, actuals)
            record.actual_amount = values.actual_amount
            record.soft_limit = values.soft_limit
            record.indicator_status = values.indicator_status
        self.db.commit()
        self.db.refresh(plan)
        return plan

    def refresh_all(self, as_of: Optional[date] = None) -> tuple[int, int]:
        """Refresh every non-expired plan; returns (expired, refreshed) counts."""
        as_of = as_of or models.today_local()
        expired = refreshed = 0
        plan_ids = [
            row[0]
            for row in self.db.query(models.BudgetPlan.id)
            .filter(models.BudgetPlan.status != models.BudgetPlanStatus.EXPIRED)
            .all()
        ]
        for plan_id in plan_ids:
            try:
                plan = self.refresh_plan(plan_id, as_of)
            except (LedgerError, SQLAlchemyError):
                logger.exception("budget_refresh_failed", plan_id=plan_id)
                self.db.rollback()
                continue
            refreshed += 1
            if plan.status == models.BudgetPlanStatus.EXPIRED:
                expired += 1
        return expired, refreshed

    # ----- two-phase recalculation -----

    def plan_recalculation(
        self, plan_ids: Optional[Iterable[int]] = None, as_of: Optional[date] = None
    ) -> list[BudgetRecalculationItem]:
        """Diff stored period records against freshly computed values. Writes nothing."""
        as_of = as_of or models.today_local()
        if plan_ids is None:
            plans = self.list_plans()
        else:
            plans = [self.get_plan(pid) for pid in plan_ids]

        items: list[BudgetRecalculationItem] = []
        for plan in plans:
            scope = self._scope(plan)
            actuals: dict[int, float] = {}
            for record in self.round_records(plan):
                new = self.evaluate_period(plan, record.period_index, float(record.hard_limit), as_of, scope, actuals)
                old = BudgetPeriodValues(
                    actual_amount=float(record.actual_amount),
                    soft_limit=None if record.soft_limit is None else float(record.soft_limit),
                    indicator_status=record.indicator_status,
                )
                if _values_equal(old, new):
                    continue
                items.append(
                    BudgetRecalculationItem(
                        plan_id=plan.id,
                        plan_name=plan.name,
                        period_id=record.id,
                        period_start=record.period_start,
                        period_end=record.period_end,
                        old_values=old,
                        new_values=new,
                    )
                )
        return items

    def commit_recalculation(self, items: Iterable[BudgetRecalculationItem]) -> int:
        """Apply exactly the given diff items."""
        updated = 0
        for item in items:
            record = self.db.get(models.BudgetPeriodRecord, item.period_id)
            if record is None or record.plan_id != item.plan_id:
                self.db.rollback()
                raise NotFoundError(f"Budget period {item.period_id}")
            record.actual_amount = item.new_values.actual_amount
            record.soft_limit = item.new_values.soft_limit
            record.indicator_status = item.new_values.indicator_status
            updated += 1
        self.db.commit()
        logger.info("budget_recalculation_committed", updated=updated)
        return updated

    # ----- dashboard -----

    def dashboard_summary(self, as_of: Optional[date] = None, currency: Optional[str] = None) -> BudgetDashboardOut:
        as_of = as_of or models.today_local()
        currency = currency or settings.BASE_CURRENCY
        rates = CurrencyService(self.db).get_rates()
        counts = {status.value: 0 for status in models.IndicatorStatus}
        items: list[BudgetDashboardItem] = []
        total_actual = total_limit = 0.0

        plans = [p for p in self.list_plans() if p.status != models.BudgetPlanStatus.EXPIRED]
        for plan in plans:
            record = self.current_record(plan, as_of)
            hard = float(record.hard_limit) if record is not None else float(plan.hard_limit)
            actual = float(record.actual_amount) if record is not None else 0.0
            indicator = record.indicator_status if record is not None else models.IndicatorStatus.NONE
            counts[indicator.value] += 1
            total_actual += convert(actual, plan.limit_currency, currency, rates)
            total_limit += convert(hard, plan.limit_currency, currency, rates)
            items.append(
                BudgetDashboardItem(
                    plan_id=plan.id,
                    name=plan.name,
                    plan_type=plan.plan_type,
                    status=plan.status,
                    period_start=record.period_start if record is not None else None,
                    period_end=record.period_end if record is not None else None,
                    actual_amount=actual,
                    hard_limit=hard,
                    soft_limit=None if record is None or record.soft_limit is None else float(record.soft_limit),
                    indicator_status=indicator,
                    usage_ratio=round(actual / hard, 4) if hard else 0.0,
                )
            )
        return BudgetDashboardOut(
            as_of=as_of,
            currency=currency,
            total_actual=round(total_actual, 4),
            total_limit=round(total_limit, 4),
            indicator_counts=counts,
            plans=items,
        )


def _values_equal(old: BudgetPeriodValues, new: BudgetPeriodValues) -> bool:
    if abs(old.actual_amount - new.actual_amount) > AMOUNT_EPSILON:
        return False
    if (old.soft_limit is None) != (new.soft_limit is None):
        return False
    if old.soft_limit is not None and abs(old.soft_limit - new.soft_limit) > AMOUNT_EPSILON:
        return False
    return old.indicator_status == new.indicator_status
