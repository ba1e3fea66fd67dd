from __future__ import annotations

from datetime import date
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..schemas import CalibrationReminder, CheckinResult, RefreshResult
from .budget_service import BudgetService
from .calibration_service import CalibrationService
from .recurrence_service import RecurrenceService

logger = structlog.get_logger(__name__)


class CheckinService:
    """Once-per-day trigger that runs the recurring jobs synchronously."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def calibration_reminders(self, today: Optional[date] = None) -> list[CalibrationReminder]:
        """Active real leaves never calibrated, then the longest-unchecked ones past the interval."""
        today = today or models.today_local()
        calibrations = CalibrationService(self.db)
        accounts = (
            self.db.query(models.Account)
            .filter(
                models.Account.is_active.is_(True),
                models.Account.is_group.is_(False),
                models.Account.account_class == models.AccountClass.REAL,
            )
            .order_by(models.Account.id)
            .all()
        )
        never: list[CalibrationReminder] = []
        stale: list[CalibrationReminder] = []
        for account in accounts:
            latest = calibrations.latest(account.id)
            if latest is None:
                never.append(CalibrationReminder(account_id=account.id, name=account.name, currency=account.currency))
                continue
            days_since = (today - latest.calibrated_at.date()).days
            if days_since >= settings.CALIBRATION_INTERVAL_DAYS:
                stale.append(
                    CalibrationReminder(
                        account_id=account.id,
                        name=account.name,
                        currency=account.currency,
                        last_calibrated_at=latest.calibrated_at,
                        days_since=days_since,
                    )
                )
        stale.sort(key=lambda r: r.days_since or 0, reverse=True)
        return never + stale

    def refresh(self, today: Optional[date] = None) -> RefreshResult:
        today = today or models.today_local()
        periodic = RecurrenceService(self.db).execute_due(today)
        expired, refreshed = BudgetService(self.db).refresh_all(today)
        reminders = self.calibration_reminders(today) if settings.CALIBRATION_REMINDER_ENABLED else []
        return RefreshResult(
            periodic=periodic,
            expired_plans=expired,
            refreshed_plans=refreshed,
            reminders=reminders,
        )

    def check_in(self, today: Optional[date] = None) -> CheckinResult:
        today = today or models.today_local()
        row = self.db.query(models.DailyCheckin).filter(models.DailyCheckin.check_date == today).first()
        is_first = row is None
        if is_first:
            self.db.add(models.DailyCheckin(check_date=today))
            self.db.commit()
        refresh = self.refresh(today)
        logger.info(
            "daily_checkin",
            check_date=today.isoformat(),
            is_first=is_first,
            created_transactions=refresh.periodic.created_transactions,
            reminders=len(refresh.reminders),
        )
        return CheckinResult(check_date=today, is_first_checkin=is_first, refresh=refresh)
