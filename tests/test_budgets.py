from __future__ import annotations

from datetime import date, datetime

import pytest

from bookkeeping import models
from bookkeeping.core.config import settings
from bookkeeping.core.exceptions import IntegrityViolationError, InvalidStateError, NotFoundError
from bookkeeping.models import IndicatorStatus
from bookkeeping.schemas import BudgetPeriodValues, BudgetPlanCreate, BudgetRecalculationItem
from bookkeeping.services.budget_service import BudgetService, classify_indicator
from bookkeeping.services.transaction_service import TransactionService
from bookkeeping.utils.dates import period_window


def _spend(db, from_id: int, to_id: int, amount: float, when: date):
    TransactionService(db).create(
        {
            "from_account_id": from_id,
            "to_account_id": to_id,
            "amount": amount,
            "occurred_at": datetime.combine(when, datetime.min.time().replace(hour=12)),
        }
    )


def _monthly_food_plan(db, food_id: int, as_of: date, **extra):
    payload = {
        "name": "Food",
        "plan_type": "category",
        "category_account_id": food_id,
        "period": "monthly",
        "hard_limit": 2000,
        "start_date": date(2024, 1, 1),
        **extra,
    }
    return BudgetService(db).create_plan(payload, as_of)


@pytest.fixture()
def food_history(db_session, make_account):
    wallet = make_account("Wallet")
    food = make_account("Food", "expense")
    for when, amount in [
        (date(2024, 1, 10), 1500),
        (date(2024, 2, 10), 1700),
        (date(2024, 3, 10), 1600),
        (date(2024, 4, 10), 1550),
    ]:
        _spend(db_session, wallet.id, food.id, amount, when)
    return wallet, food


def test_monthly_windows_keep_day_of_month():
    start = date(2024, 1, 31)
    assert period_window(start, "monthly", 1) == (date(2024, 1, 31), date(2024, 2, 28))
    assert period_window(start, "monthly", 2) == (date(2024, 2, 29), date(2024, 3, 30))
    assert period_window(start, "monthly", 3)[0] == date(2024, 3, 31)
    assert period_window(date(2024, 1, 1), "weekly", 2) == (date(2024, 1, 8), date(2024, 1, 14))


def test_classify_indicator():
    trailing = [1500, 1700, 1600]
    assert classify_indicator(1550, 2000, 1600, trailing) == IndicatorStatus.GREEN
    assert classify_indicator(1000, 2000, 1600, trailing) == IndicatorStatus.STAR
    assert classify_indicator(2100, 2000, 1600, trailing) == IndicatorStatus.RED
    assert classify_indicator(500, 2000, None) == IndicatorStatus.GREEN
    # over hard but within a higher soft reference is not red
    assert classify_indicator(2100, 2000, 2200, [2300, 2200, 2100]) != IndicatorStatus.RED


def test_soft_limit_from_trailing_periods(db_session, food_history):
    _, food = food_history
    svc = BudgetService(db_session)
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 5, 15))

    records = svc.round_records(plan)
    assert [r.period_index for r in records] == [1, 2, 3, 4, 5]
    assert [float(r.actual_amount) for r in records[:4]] == [1500, 1700, 1600, 1550]
    assert all(r.soft_limit is None for r in records[:3])

    april = records[3]
    assert float(april.soft_limit) == pytest.approx(1600)
    assert april.indicator_status == IndicatorStatus.GREEN

    may = records[4]
    assert may.period_start == date(2024, 5, 1)
    assert float(may.soft_limit) == pytest.approx((1700 + 1600 + 1550) / 3, abs=1e-3)
    assert may.indicator_status == IndicatorStatus.NONE


def test_soft_limit_disabled(db_session, food_history):
    _, food = food_history
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 5, 15), soft_limit_enabled=False)
    assert all(r.soft_limit is None for r in BudgetService(db_session).round_records(plan))


def test_recalculation_preview_then_commit(db_session, food_history):
    wallet, food = food_history
    svc = BudgetService(db_session)
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 5, 15))
    _spend(db_session, wallet.id, food.id, 100, date(2024, 4, 20))

    items = svc.plan_recalculation([plan.id], as_of=date(2024, 5, 15))
    assert {i.period_start for i in items} == {date(2024, 4, 1), date(2024, 5, 1)}
    april_item = next(i for i in items if i.period_start == date(2024, 4, 1))
    assert april_item.old_values.actual_amount == pytest.approx(1550)
    assert april_item.new_values.actual_amount == pytest.approx(1650)
    # preview wrote nothing
    assert float(svc.round_records(plan)[3].actual_amount) == pytest.approx(1550)

    assert svc.commit_recalculation(items) == len(items)
    assert float(svc.round_records(plan)[3].actual_amount) == pytest.approx(1650)
    assert svc.plan_recalculation([plan.id], as_of=date(2024, 5, 15)) == []


def test_commit_rejects_unknown_period(db_session, food_history):
    _, food = food_history
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 2, 15))
    values = BudgetPeriodValues(actual_amount=1, indicator_status=IndicatorStatus.NONE)
    item = BudgetRecalculationItem(
        plan_id=plan.id,
        period_id=99999,
        period_start=date(2024, 1, 1),
        period_end=date(2024, 1, 31),
        old_values=values,
        new_values=values,
    )
    with pytest.raises(NotFoundError):
        BudgetService(db_session).commit_recalculation([item])


def test_state_machine(db_session, make_account):
    food = make_account("Food", "expense")
    svc = BudgetService(db_session)
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 1, 15))

    assert svc.pause(plan.id).status == models.BudgetPlanStatus.PAUSED
    with pytest.raises(InvalidStateError):
        svc.pause(plan.id)
    assert svc.resume(plan.id, as_of=date(2024, 1, 15)).status == models.BudgetPlanStatus.ACTIVE
    with pytest.raises(InvalidStateError):
        svc.resume(plan.id)
    with pytest.raises(InvalidStateError):
        svc.restart(plan.id, as_of=date(2024, 1, 15))


def test_expiry_and_restart_on_period_grid(db_session, make_account):
    food = make_account("Food", "expense")
    svc = BudgetService(db_session)
    plan = svc.create_plan(
        {
            "plan_type": "category",
            "category_account_id": food.id,
            "period": "weekly",
            "hard_limit": 300,
            "start_date": date(2024, 1, 1),
        },
        as_of=date(2024, 1, 3),
    )
    assert plan.end_date == date(2024, 3, 24)

    plan = svc.refresh_plan(plan.id, as_of=date(2024, 4, 10))
    assert plan.status == models.BudgetPlanStatus.EXPIRED
    assert len(svc.round_records(plan)) == 12

    plan = svc.restart(plan.id, hard_limit=350, as_of=date(2024, 4, 10))
    assert plan.status == models.BudgetPlanStatus.ACTIVE
    assert plan.round_number == 2
    assert plan.start_date == date(2024, 4, 8)
    records = svc.round_records(plan)
    assert [(r.period_start, r.period_end) for r in records] == [(date(2024, 4, 8), date(2024, 4, 14))]
    assert float(records[0].hard_limit) == 350


def test_plan_uniqueness_and_category_rules(db_session, make_account):
    food = make_account("Food", "expense")
    wallet = make_account("Wallet")
    svc = BudgetService(db_session)
    _monthly_food_plan(db_session, food.id, as_of=date(2024, 1, 15))

    with pytest.raises(InvalidStateError):
        _monthly_food_plan(db_session, food.id, as_of=date(2024, 1, 15))
    with pytest.raises(IntegrityViolationError):
        _monthly_food_plan(db_session, wallet.id, as_of=date(2024, 1, 15))

    svc.create_plan({"plan_type": "total", "period": "monthly", "hard_limit": 5000, "start_date": date(2024, 1, 1)}, date(2024, 1, 15))
    with pytest.raises(InvalidStateError):
        svc.create_plan({"plan_type": "total", "period": "weekly", "hard_limit": 900, "start_date": date(2024, 1, 1)}, date(2024, 1, 15))


def test_hard_limit_change_spares_elapsed_periods(db_session, food_history):
    _, food = food_history
    svc = BudgetService(db_session)
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 3, 15))

    plan = svc.update_plan(plan.id, {"hard_limit": 1800}, as_of=date(2024, 3, 15))
    limits = [float(r.hard_limit) for r in svc.round_records(plan)]
    assert limits == [2000, 2000, 1800]
    assert float(plan.hard_limit) == 1800


def test_period_change_opens_new_round(db_session, food_history):
    _, food = food_history
    svc = BudgetService(db_session)
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 3, 15))

    plan = svc.update_plan(plan.id, {"period": "weekly", "start_date": date(2024, 3, 11)}, as_of=date(2024, 3, 15))
    assert plan.round_number == 2
    assert plan.period == models.BudgetPeriodKind.WEEKLY
    records = svc.round_records(plan)
    assert [r.period_start for r in records] == [date(2024, 3, 11)]
    assert float(records[0].actual_amount) == 0


def test_account_filters_and_currency(db_session, make_account):
    wallet = make_account("Wallet")
    card = make_account("Card")
    usd = make_account("USD card", currency="USD")
    food = make_account("Food", "expense")
    _spend(db_session, wallet.id, food.id, 100, date(2024, 1, 5))
    _spend(db_session, card.id, food.id, 40, date(2024, 1, 6))
    _spend(db_session, usd.id, food.id, 10, date(2024, 1, 7))

    svc = BudgetService(db_session)
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 1, 20))
    # USD converts at the default 7.25
    assert float(svc.round_records(plan)[0].actual_amount) == pytest.approx(100 + 40 + 72.5)

    plan = svc.update_plan(plan.id, {"account_filter_mode": "include", "account_filter_ids": [wallet.id]}, as_of=date(2024, 1, 20))
    assert float(svc.round_records(plan)[0].actual_amount) == pytest.approx(100)

    plan = svc.update_plan(plan.id, {"account_filter_mode": "exclude", "account_filter_ids": [wallet.id]}, as_of=date(2024, 1, 20))
    assert float(svc.round_records(plan)[0].actual_amount) == pytest.approx(40 + 72.5)


def test_total_plan_counts_every_expense_category(db_session, make_account):
    wallet = make_account("Wallet")
    food = make_account("Food", "expense")
    rent = make_account("Rent", "expense")
    _spend(db_session, wallet.id, food.id, 100, date(2024, 1, 5))
    _spend(db_session, wallet.id, rent.id, 900, date(2024, 1, 6))

    svc = BudgetService(db_session)
    plan = svc.create_plan(
        {"plan_type": "total", "period": "monthly", "hard_limit": 5000, "start_date": date(2024, 1, 1)},
        date(2024, 1, 20),
    )
    assert float(svc.round_records(plan)[0].actual_amount) == pytest.approx(1000)


def test_budget_api(client, db_session, food_history):
    _, food = food_history
    res = client.post(
        "/api/budgets",
        params={"as_of": "2024-05-15"},
        json={
            "name": "Food",
            "plan_type": "category",
            "category_account_id": food.id,
            "period": "monthly",
            "hard_limit": 2000,
            "start_date": "2024-01-01",
        },
    )
    assert res.status_code == 201
    body = res.json()
    assert len(body["records"]) == 5
    assert body["current_period"]["period_start"] == "2024-05-01"

    missing = client.post(
        "/api/budgets",
        json={"plan_type": "category", "period": "monthly", "hard_limit": 100, "start_date": "2024-01-01"},
    )
    assert missing.status_code == 422

    dash = client.get("/api/budgets/dashboard", params={"as_of": "2024-05-15"})
    assert dash.status_code == 200
    assert len(dash.json()["plans"]) == 1
    assert dash.json()["total_limit"] == pytest.approx(2000)
    assert dash.json()["indicator_counts"]["none"] == 1

    plan_id = body["id"]
    assert client.post(f"/api/budgets/{plan_id}/pause").json()["status"] == "paused"
    assert client.post(f"/api/budgets/{plan_id}/pause").status_code == 409
    assert client.post(f"/api/budgets/{plan_id}/restart", json={}).status_code == 409

    preview = client.post("/api/budgets/recalculate/preview", json={"plan_ids": [plan_id], "as_of": "2024-05-15"})
    assert preview.status_code == 200 and preview.json() == []

    assert client.delete(f"/api/budgets/{plan_id}").status_code == 204
    assert client.get(f"/api/budgets/{plan_id}").status_code == 404


def test_refresh_all_expires_finished_plans(db_session, make_account):
    food = make_account("Food", "expense")
    svc = BudgetService(db_session)
    plan = svc.create_plan(
        {
            "plan_type": "category",
            "category_account_id": food.id,
            "period": "weekly",
            "hard_limit": 300,
            "start_date": date(2024, 1, 1),
        },
        as_of=date(2024, 1, 3),
    )

    assert svc.refresh_all(date(2024, 3, 1)) == (0, 1)
    assert svc.refresh_all(date(2024, 4, 10)) == (1, 1)
    assert svc.get_plan(plan.id).status == models.BudgetPlanStatus.EXPIRED
    # expired plans are left alone
    assert svc.refresh_all(date(2024, 4, 11)) == (0, 0)


def test_plan_currency_defaults_to_base_currency(db_session, make_account, monkeypatch):
    food = make_account("Food", "expense")
    monkeypatch.setattr(settings, "BASE_CURRENCY", "USD")
    payload = BudgetPlanCreate(
        plan_type="category",
        category_account_id=food.id,
        period="monthly",
        hard_limit=500,
        start_date=date(2024, 1, 1),
    )
    assert payload.limit_currency is None

    plan = BudgetService(db_session).create_plan(payload.model_dump(), as_of=date(2024, 1, 15))
    assert plan.limit_currency == "USD"


def test_recalculation_preview_leaves_records_untouched(db_session, food_history):
    wallet, food = food_history
    svc = BudgetService(db_session)
    plan = _monthly_food_plan(db_session, food.id, as_of=date(2024, 5, 15))
    _spend(db_session, wallet.id, food.id, 100, date(2024, 4, 20))

    def snapshot():
        db_session.expire_all()
        return [
            (r.id, float(r.actual_amount), r.soft_limit and float(r.soft_limit), r.indicator_status)
            for r in db_session.query(models.BudgetPeriodRecord).order_by(models.BudgetPeriodRecord.id)
        ]

    before = snapshot()
    first = svc.plan_recalculation([plan.id], as_of=date(2024, 5, 15))
    second = svc.plan_recalculation([plan.id], as_of=date(2024, 5, 15))
    assert not db_session.new and not db_session.dirty
    assert snapshot() == before
    assert [i.model_dump() for i in first] == [i.model_dump() for i in second]
    assert first
