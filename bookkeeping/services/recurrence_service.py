from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..core.exceptions import IntegrityViolationError, LedgerError, NotFoundError
from ..schemas import PeriodicExecutionResult, PeriodicTaskFailure
from ..utils.dates import add_months
from .transaction_service import TransactionService

logger = structlog.get_logger(__name__)

# postings created by the trigger are stamped at noon of the due date
RUN_TIME = time(12, 0)

DAY_STEPS = {"daily": 1, "weekly": 7, "biweekly": 14}
MONTH_STEPS = {"monthly": 1, "quarterly": 3, "yearly": 12}


def parse_frequency(frequency: str) -> tuple[str, int]:
    """Return (unit, step) where unit is ``days`` or ``months``."""
    freq = (frequency or "").strip().lower()
    if freq in DAY_STEPS:
        return "days", DAY_STEPS[freq]
    if freq in MONTH_STEPS:
        return "months", MONTH_STEPS[freq]
    if freq.startswith("custom:"):
        try:
            days = int(freq.split(":", 1)[1])
        except ValueError:
            days = 0
        if days > 0:
            return "days", days
    raise IntegrityViolationError(f"Unsupported frequency: {frequency}")


def advance(current: date, frequency: str, anchor_day: Optional[int] = None) -> date:
    unit, step = parse_frequency(frequency)
    if unit == "days":
        return current + timedelta(days=step)
    return add_months(current, step, anchor_day=anchor_day or current.day)


def next_run_after(first_run: date, frequency: str, after: date) -> date:
    """First occurrence of the schedule strictly after ``after``."""
    current = first_run
    while current <= after:
        current = advance(current, frequency, first_run.day)
    return current


class RecurrenceService:
    """Periodic tasks and the trigger that turns due ones into postings."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, task_id: int) -> models.PeriodicTask:
        row = self.db.get(models.PeriodicTask, task_id)
        if row is None:
            raise NotFoundError("Periodic task")
        return row

    def list(self, is_active: Optional[bool] = None) -> list[models.PeriodicTask]:
        q = self.db.query(models.PeriodicTask)
        if is_active is not None:
            q = q.filter(models.PeriodicTask.is_active == bool(is_active))
        return q.order_by(models.PeriodicTask.next_run_date, models.PeriodicTask.id).all()

    def _validate(self, values: dict) -> dict:
        parse_frequency(values["frequency"])
        normalized, _, _ = TransactionService(self.db).normalize_posting(
            {
                "from_account_id": values["from_account_id"],
                "to_account_id": values["to_account_id"],
                "amount": values["amount"],
                "from_amount": values.get("from_amount"),
                "to_amount": values.get("to_amount"),
            }
        )
        values["from_amount"] = normalized["from_amount"]
        values["to_amount"] = normalized["to_amount"]
        return values

    def create(self, payload: dict) -> models.PeriodicTask:
        values = self._validate(dict(payload))
        row = models.PeriodicTask(
            from_account_id=values["from_account_id"],
            to_account_id=values["to_account_id"],
            amount=values["amount"],
            from_amount=values.get("from_amount"),
            to_amount=values.get("to_amount"),
            description=values.get("description"),
            frequency=values["frequency"],
            first_run_date=values["first_run_date"],
            next_run_date=values["first_run_date"],
            is_active=True,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        logger.info("periodic_task_created", task_id=row.id, frequency=row.frequency, next_run_date=row.next_run_date.isoformat())
        return row

    def update(self, task_id: int, patch: dict, today: Optional[date] = None) -> models.PeriodicTask:
        row = self.get(task_id)
        patch = {k: v for k, v in patch.items() if v is not None}
        is_active = patch.pop("is_active", None)
        if patch:
            values = {
                "from_account_id": row.from_account_id,
                "to_account_id": row.to_account_id,
                "amount": float(row.amount),
                "from_amount": None if row.from_amount is None else float(row.from_amount),
                "to_amount": None if row.to_amount is None else float(row.to_amount),
                "frequency": row.frequency,
            }
            # stored legs were computed for the old amount and account pair
            if {"amount", "from_account_id", "to_account_id"} & patch.keys():
                values["from_amount"] = None
                values["to_amount"] = None
            values.update(patch)
            self._validate(values)
            for key, value in patch.items():
                setattr(row, key, value)
            row.from_amount = values["from_amount"]
            row.to_amount = values["to_amount"]
            self.db.commit()
            self.db.refresh(row)
            logger.info("periodic_task_updated", task_id=row.id, fields=sorted(patch))
        if is_active is not None and is_active != row.is_active:
            row = self.set_active(task_id, is_active, today)
        return row

    def set_active(self, task_id: int, is_active: bool, today: Optional[date] = None) -> models.PeriodicTask:
        row = self.get(task_id)
        row.is_active = is_active
        if is_active:
            # skip the occurrences missed while inactive
            today = today or models.today_local()
            if row.next_run_date < today:
                row.next_run_date = next_run_after(row.first_run_date, row.frequency, today - timedelta(days=1))
        self.db.commit()
        self.db.refresh(row)
        return row

    def delete(self, task_id: int) -> None:
        row = self.get(task_id)
        self.db.delete(row)
        self.db.commit()

    def _run_task(self, task: models.PeriodicTask, today: date) -> int:
        ledger = TransactionService(self.db)
        created = 0
        run_date = task.next_run_date
        while run_date <= today:
            ledger.create(
                {
                    "from_account_id": task.from_account_id,
                    "to_account_id": task.to_account_id,
                    "amount": float(task.amount),
                    "from_amount": None if task.from_amount is None else float(task.from_amount),
                    "to_amount": None if task.to_amount is None else float(task.to_amount),
                    "occurred_at": datetime.combine(run_date, RUN_TIME),
                    "description": task.description,
                    "nature": models.TransactionNature.PERIODIC,
                },
                commit=False,
            )
            created += 1
            run_date = advance(run_date, task.frequency, task.first_run_date.day)
        task.next_run_date = run_date
        return created

    def execute_due(self, today: Optional[date] = None) -> PeriodicExecutionResult:
        """Post every due occurrence of active tasks; one failing task does not stop the rest."""
        today = today or models.today_local()
        result = PeriodicExecutionResult()
        due_ids = [
            row[0]
            for row in self.db.query(models.PeriodicTask.id)
            .filter(models.PeriodicTask.is_active.is_(True), models.PeriodicTask.next_run_date <= today)
            .order_by(models.PeriodicTask.next_run_date, models.PeriodicTask.id)
            .all()
        ]
        for task_id in due_ids:
            task = self.get(task_id)
            try:
                created = self._run_task(task, today)
                self.db.commit()
            except (LedgerError, SQLAlchemyError) as exc:
                self.db.rollback()
                detail = getattr(exc, "detail", None) or str(exc)
                logger.exception("periodic_task_failed", task_id=task_id)
                result.failures.append(PeriodicTaskFailure(task_id=task_id, error=str(detail)))
                continue
            result.executed_tasks += 1
            result.created_transactions += created
            logger.info("periodic_task_executed", task_id=task_id, created=created, next_run_date=task.next_run_date.isoformat())
        return result
