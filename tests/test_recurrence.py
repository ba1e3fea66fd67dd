from __future__ import annotations

from datetime import date, datetime

import pytest

from bookkeeping import models
from bookkeeping.core.exceptions import IntegrityViolationError
from bookkeeping.services.currency_service import CurrencyService
from bookkeeping.services.recurrence_service import RecurrenceService, advance, next_run_after, parse_frequency


def _task(db, from_id: int, to_id: int, first_run: date, frequency: str = "monthly", amount: float = 3000):
    return RecurrenceService(db).create(
        {
            "from_account_id": from_id,
            "to_account_id": to_id,
            "amount": amount,
            "description": "Rent",
            "frequency": frequency,
            "first_run_date": first_run,
        }
    )


def test_frequency_parsing():
    assert parse_frequency("weekly") == ("days", 7)
    assert parse_frequency("quarterly") == ("months", 3)
    assert parse_frequency("custom:10") == ("days", 10)
    with pytest.raises(IntegrityViolationError):
        parse_frequency("fortnightly")
    with pytest.raises(IntegrityViolationError):
        parse_frequency("custom:0")


def test_monthly_schedule_keeps_anchor_day():
    first = date(2024, 1, 31)
    assert next_run_after(first, "monthly", first) == date(2024, 2, 29)
    assert advance(date(2024, 2, 29), "monthly", anchor_day=31) == date(2024, 3, 31)
    assert next_run_after(date(2024, 1, 5), "biweekly", date(2024, 1, 20)) == date(2024, 2, 2)


def test_execute_due_posts_every_missed_occurrence(db_session, make_account):
    wallet = make_account("Wallet")
    rent = make_account("Rent", "expense")
    task = _task(db_session, wallet.id, rent.id, date(2024, 1, 5))
    assert task.next_run_date == date(2024, 1, 5)

    svc = RecurrenceService(db_session)
    result = svc.execute_due(date(2024, 3, 10))
    assert result.executed_tasks == 1
    assert result.created_transactions == 3
    assert result.failures == []

    rows = (
        db_session.query(models.Transaction)
        .filter(models.Transaction.to_account_id == rent.id)
        .order_by(models.Transaction.occurred_at)
        .all()
    )
    assert [r.occurred_at for r in rows] == [
        datetime(2024, 1, 5, 12, 0),
        datetime(2024, 2, 5, 12, 0),
        datetime(2024, 3, 5, 12, 0),
    ]
    assert all(r.nature == models.TransactionNature.PERIODIC for r in rows)
    assert svc.get(task.id).next_run_date == date(2024, 4, 5)

    again = svc.execute_due(date(2024, 3, 10))
    assert again.created_transactions == 0


def test_failing_task_does_not_block_others(db_session, make_account):
    wallet = make_account("Wallet")
    rent = make_account("Rent", "expense")
    gym = make_account("Gym", "expense")
    broken = _task(db_session, wallet.id, gym.id, date(2024, 1, 1), amount=50)
    healthy = _task(db_session, wallet.id, rent.id, date(2024, 1, 5))

    # a category turned into a group can no longer be posted to
    gym.is_group = True
    db_session.commit()

    svc = RecurrenceService(db_session)
    result = svc.execute_due(date(2024, 1, 10))
    assert result.executed_tasks == 1
    assert result.created_transactions == 1
    assert [f.task_id for f in result.failures] == [broken.id]
    assert svc.get(broken.id).next_run_date == date(2024, 1, 1)
    assert svc.get(healthy.id).next_run_date == date(2024, 2, 5)


def test_reactivation_skips_missed_runs(db_session, make_account):
    wallet = make_account("Wallet")
    rent = make_account("Rent", "expense")
    task = _task(db_session, wallet.id, rent.id, date(2024, 1, 5))
    svc = RecurrenceService(db_session)

    svc.set_active(task.id, False)
    assert svc.execute_due(date(2024, 3, 10)).created_transactions == 0

    task = svc.set_active(task.id, True, today=date(2024, 3, 10))
    assert task.next_run_date == date(2024, 4, 5)


def test_task_validation(db_session, make_account):
    usd = make_account("USD card", currency="USD")
    rent = make_account("Rent", "expense")
    living = make_account("Living", "expense", is_group=True)
    svc = RecurrenceService(db_session)
    with pytest.raises(IntegrityViolationError):
        _task(db_session, usd.id, living.id, date(2024, 1, 1))
    with pytest.raises(IntegrityViolationError):
        svc.create(
            {
                "from_account_id": usd.id,
                "to_account_id": rent.id,
                "amount": 10,
                "to_amount": 70,
                "frequency": "monthly",
                "first_run_date": date(2024, 1, 1),
            }
        )


def test_periodic_api(client, make_account):
    wallet = make_account("Wallet")
    rent = make_account("Rent", "expense")
    payload = {
        "from_account_id": wallet.id,
        "to_account_id": rent.id,
        "amount": 3000,
        "frequency": "Monthly",
        "first_run_date": "2024-01-05",
    }
    res = client.post("/api/periodic-tasks", json=payload)
    assert res.status_code == 201
    assert res.json()["frequency"] == "monthly"
    assert res.json()["next_run_date"] == "2024-01-05"

    assert client.post("/api/periodic-tasks", json={**payload, "frequency": "sometimes"}).status_code == 422

    run = client.post("/api/periodic-tasks/execute", params={"today": "2024-02-05"})
    assert run.status_code == 200
    assert run.json()["created_transactions"] == 2

    task_id = res.json()["id"]
    updated = client.patch(f"/api/periodic-tasks/{task_id}", json={"amount": 3200})
    assert updated.json()["amount"] == pytest.approx(3200)
    assert client.delete(f"/api/periodic-tasks/{task_id}").status_code == 204
    assert client.get("/api/periodic-tasks").json() == []


def test_update_recomputes_leg_amounts(db_session, make_account):
    CurrencyService(db_session).upsert_rate("USD", "CNY", 7.2)
    usd = make_account("USD card", currency="USD")
    cny = make_account("Wallet", currency="CNY")
    usd_savings = make_account("USD savings", currency="USD")
    svc = RecurrenceService(db_session)
    task = _task(db_session, usd.id, cny.id, date(2024, 1, 1), amount=100)
    assert task.from_amount == pytest.approx(100)
    assert task.to_amount == pytest.approx(720)

    task = svc.update(task.id, {"amount": 200})
    assert task.from_amount == pytest.approx(200)
    assert task.to_amount == pytest.approx(1440)

    svc.execute_due(date(2024, 1, 1))
    posted = db_session.query(models.Transaction).filter(models.Transaction.to_account_id == cny.id).one()
    assert posted.from_amount == pytest.approx(200)
    assert posted.to_amount == pytest.approx(1440)

    # same-currency pair carries no leg amounts
    task = svc.update(task.id, {"to_account_id": usd_savings.id})
    assert task.from_amount is None
    assert task.to_amount is None


def test_update_with_explicit_legs_keeps_them(db_session, make_account):
    usd = make_account("USD card", currency="USD")
    cny = make_account("Wallet", currency="CNY")
    svc = RecurrenceService(db_session)
    task = _task(db_session, usd.id, cny.id, date(2024, 1, 1), amount=100)

    task = svc.update(task.id, {"amount": 150, "to_amount": 1000})
    assert task.from_amount == pytest.approx(150)
    assert task.to_amount == pytest.approx(1000)


def test_update_is_active_skips_missed_runs(db_session, make_account):
    wallet = make_account("Wallet")
    rent = make_account("Rent", "expense")
    task = _task(db_session, wallet.id, rent.id, date(2024, 1, 5))
    svc = RecurrenceService(db_session)

    svc.update(task.id, {"is_active": False})
    task = svc.update(task.id, {"is_active": True}, today=date(2024, 3, 10))
    assert task.is_active is True
    assert task.next_run_date == date(2024, 4, 5)
