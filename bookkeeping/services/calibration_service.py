from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..core.exceptions import DuplicateCalibrationError, IntegrityViolationError, InvalidStateError, NotFoundError

logger = structlog.get_logger(__name__)


class CalibrationService:
    """Store of user-asserted balances for real leaf accounts."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _base_query(self, account_id: int):
        return self.db.query(models.Calibration).filter(models.Calibration.account_id == account_id)

    def get(self, calibration_id: int) -> models.Calibration:
        row = self.db.get(models.Calibration, calibration_id)
        if row is None:
            raise NotFoundError("Calibration")
        return row

    def list(self, account_id: int, limit: Optional[int] = None) -> list[models.Calibration]:
        q = self._base_query(account_id).order_by(
            models.Calibration.calibrated_at.desc(), models.Calibration.id.desc()
        )
        if limit:
            q = q.limit(limit)
        return q.all()

    def list_ascending(self, account_id: int) -> list[models.Calibration]:
        return (
            self._base_query(account_id)
            .order_by(models.Calibration.calibrated_at.asc(), models.Calibration.id.asc())
            .all()
        )

    def latest(self, account_id: int) -> models.Calibration | None:
        return self._base_query(account_id).order_by(
            models.Calibration.calibrated_at.desc(), models.Calibration.id.desc()
        ).first()

    def latest_on_or_before(self, account_id: int, when: datetime) -> models.Calibration | None:
        return (
            self._base_query(account_id)
            .filter(models.Calibration.calibrated_at <= when)
            .order_by(models.Calibration.calibrated_at.desc(), models.Calibration.id.desc())
            .first()
        )

    def earliest_after(self, account_id: int, when: datetime) -> models.Calibration | None:
        return (
            self._base_query(account_id)
            .filter(models.Calibration.calibrated_at > when)
            .order_by(models.Calibration.calibrated_at.asc(), models.Calibration.id.asc())
            .first()
        )

    def create(
        self,
        account_id: int,
        balance: float,
        when: datetime,
        *,
        source: models.CalibrationSource | str = models.CalibrationSource.MANUAL,
        is_opening: bool = False,
        note: str | None = None,
        commit: bool = True,
    ) -> models.Calibration:
        account = self.db.get(models.Account, account_id)
        if account is None:
            raise NotFoundError("Account")
        if not account.is_real_leaf:
            raise IntegrityViolationError("Calibrations are only allowed on real leaf accounts")

        if not is_opening:
            previous = self.latest_on_or_before(account_id, when)
            if previous is not None and abs(float(previous.balance) - float(balance)) < settings.CALIBRATION_TOLERANCE:
                logger.info(
                    "calibration_duplicate_rejected",
                    account_id=account_id,
                    balance=float(balance),
                    previous_id=previous.id,
                )
                raise DuplicateCalibrationError()

        row = models.Calibration(
            account_id=account_id,
            balance=balance,
            calibrated_at=when,
            source=source,
            is_opening=is_opening,
            note=note,
        )
        self.db.add(row)
        if commit:
            self.db.commit()
            self.db.refresh(row)
        else:
            self.db.flush()
        logger.info("calibration_created", account_id=account_id, calibration_id=row.id, balance=float(balance))
        return row

    def delete(self, calibration_id: int) -> None:
        row = self.get(calibration_id)
        referenced = (
            self.db.query(models.ReconciliationIssue.id)
            .filter(
                (models.ReconciliationIssue.start_calibration_id == calibration_id)
                | (models.ReconciliationIssue.end_calibration_id == calibration_id)
            )
            .first()
        )
        if referenced is not None:
            raise InvalidStateError("Calibration is referenced by a reconciliation issue")
        self.db.delete(row)
        self.db.commit()
