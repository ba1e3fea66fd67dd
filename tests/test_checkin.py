from __future__ import annotations

from datetime import date, datetime

from bookkeeping.core.config import settings
from bookkeeping.services.calibration_service import CalibrationService
from bookkeeping.services.checkin_service import CheckinService
from bookkeeping.services.recurrence_service import RecurrenceService


def test_first_and_repeat_checkin(client):
    first = client.post("/api/checkin", params={"today": "2024-03-10"})
    assert first.status_code == 200
    assert first.json()["is_first_checkin"] is True

    second = client.post("/api/checkin", params={"today": "2024-03-10"})
    assert second.json()["is_first_checkin"] is False

    next_day = client.post("/api/checkin", params={"today": "2024-03-11"})
    assert next_day.json()["is_first_checkin"] is True


def test_checkin_runs_due_tasks_and_budget_refresh(db_session, make_account):
    wallet = make_account("Wallet")
    rent = make_account("Rent", "expense")
    RecurrenceService(db_session).create(
        {
            "from_account_id": wallet.id,
            "to_account_id": rent.id,
            "amount": 3000,
            "frequency": "monthly",
            "first_run_date": date(2024, 1, 5),
        }
    )

    result = CheckinService(db_session).check_in(date(2024, 2, 10))
    assert result.refresh.periodic.created_transactions == 2
    assert result.refresh.refreshed_plans == 0

    again = CheckinService(db_session).check_in(date(2024, 2, 10))
    assert again.is_first_checkin is False
    assert again.refresh.periodic.created_transactions == 0


def test_calibration_reminders_order(db_session, make_account):
    fresh = make_account("Fresh")
    stale = make_account("Stale")
    older = make_account("Older")
    never = make_account("Never")
    make_account("Food", "expense")
    calibrations = CalibrationService(db_session)
    calibrations.create(fresh.id, 10, datetime(2024, 3, 5))
    calibrations.create(stale.id, 10, datetime(2024, 2, 1))
    calibrations.create(older.id, 10, datetime(2024, 1, 1))

    reminders = CheckinService(db_session).calibration_reminders(date(2024, 3, 10))
    assert [r.account_id for r in reminders] == [never.id, older.id, stale.id]
    assert reminders[0].days_since is None
    assert reminders[1].days_since == 69


def test_reminders_can_be_disabled(db_session, make_account, monkeypatch):
    make_account("Never")
    monkeypatch.setattr(settings, "CALIBRATION_REMINDER_ENABLED", False)
    result = CheckinService(db_session).refresh(date(2024, 3, 10))
    assert result.reminders == []

    reminders = CheckinService(db_session).calibration_reminders(date(2024, 3, 10))
    assert len(reminders) == 1
