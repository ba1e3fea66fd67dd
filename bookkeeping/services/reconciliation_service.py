"""Cross-check adjacent calibrations against the ledger movement between them."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..core.exceptions import InvalidStateError, LedgerError, NotFoundError
from ..schemas import AccountReconciliationStatus, ReconciliationCheckResult, ReconciliationIssueOut
from .balance_service import BalanceService
from .calibration_service import CalibrationService

logger = structlog.get_logger(__name__)


class ReconciliationService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.balances = BalanceService(db)
        self.calibrations = CalibrationService(db)

    def get_issue(self, issue_id: int) -> models.ReconciliationIssue:
        row = self.db.get(models.ReconciliationIssue, issue_id)
        if row is None:
            raise NotFoundError("Reconciliation issue")
        return row

    def list_issues(
        self,
        status: Optional[models.ReconciliationStatus] = models.ReconciliationStatus.OPEN,
        account_id: Optional[int] = None,
    ) -> list[models.ReconciliationIssue]:
        q = self.db.query(models.ReconciliationIssue)
        if status is not None:
            q = q.filter(models.ReconciliationIssue.status == status)
        if account_id is not None:
            q = q.filter(models.ReconciliationIssue.account_id == account_id)
        return q.order_by(models.ReconciliationIssue.period_end.desc(), models.ReconciliationIssue.id.desc()).all()

    def _record_issue(
        self,
        account_id: int,
        start: models.Calibration,
        end: models.Calibration,
        expected: float,
        actual: float,
    ) -> models.ReconciliationIssue:
        row = (
            self.db.query(models.ReconciliationIssue)
            .filter(
                models.ReconciliationIssue.start_calibration_id == start.id,
                models.ReconciliationIssue.end_calibration_id == end.id,
            )
            .first()
        )
        if row is None:
            row = models.ReconciliationIssue(
                account_id=account_id,
                start_calibration_id=start.id,
                end_calibration_id=end.id,
                period_start=start.calibrated_at,
                period_end=end.calibrated_at,
                status=models.ReconciliationStatus.OPEN,
            )
            self.db.add(row)
        elif row.status != models.ReconciliationStatus.OPEN:
            return row
        row.expected_delta = round(expected, 4)
        row.actual_delta = round(actual, 4)
        row.diff = round(actual - expected, 4)
        return row

    def run_check(
        self,
        account_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ReconciliationCheckResult:
        """Compare each adjacent calibration pair with the ledger delta between them."""
        try:
            pairs = self.calibrations.list_ascending(account_id)
            if start is not None:
                pairs = [c for c in pairs if c.calibrated_at >= start]
            if end is not None:
                pairs = [c for c in pairs if c.calibrated_at <= end]
            if len(pairs) < 2:
                return ReconciliationCheckResult(account_id=account_id, status="insufficient_calibrations")

            issues: list[models.ReconciliationIssue] = []
            checked = 0
            for first, second in zip(pairs, pairs[1:]):
                expected = float(second.balance) - float(first.balance)
                actual = self.balances.ledger_delta(account_id, first.calibrated_at, second.calibrated_at)
                checked += 1
                if abs(actual - expected) > settings.CALIBRATION_TOLERANCE:
                    issues.append(self._record_issue(account_id, first, second, expected, actual))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("reconciliation_check_failed", account_id=account_id)
            return ReconciliationCheckResult(account_id=account_id, status="error", error=str(exc))

        if issues:
            logger.info("reconciliation_issues_found", account_id=account_id, count=len(issues))
        return ReconciliationCheckResult(
            account_id=account_id,
            status="checked",
            checked_pairs=checked,
            issues=[ReconciliationIssueOut.model_validate(i) for i in issues],
        )

    def run_batch(self, account_ids: Optional[Iterable[int]] = None) -> list[ReconciliationCheckResult]:
        if account_ids is None:
            account_ids = [
                a.id
                for a in self.db.query(models.Account)
                .filter(
                    models.Account.is_group.is_(False),
                    models.Account.account_class == models.AccountClass.REAL,
                    models.Account.is_active.is_(True),
                )
                .order_by(models.Account.id)
                .all()
            ]
        results = []
        for account_id in account_ids:
            try:
                results.append(self.run_check(account_id))
            except LedgerError as exc:
                logger.warning("reconciliation_check_skipped", account_id=account_id, detail=exc.detail)
                results.append(ReconciliationCheckResult(account_id=account_id, status="error", error=str(exc.detail)))
        return results

    def status(self, account_id: int) -> AccountReconciliationStatus:
        if self.db.get(models.Account, account_id) is None:
            raise NotFoundError("Account")
        latest = self.calibrations.latest(account_id)
        open_issues = (
            self.db.query(models.ReconciliationIssue.id)
            .filter(
                models.ReconciliationIssue.account_id == account_id,
                models.ReconciliationIssue.status == models.ReconciliationStatus.OPEN,
            )
            .count()
        )
        if latest is None:
            return AccountReconciliationStatus(account_id=account_id, status="no_calibration", open_issues=open_issues)

        # balance at the latest calibration as projected from the one before it
        earlier = next((c for c in self.calibrations.list(account_id) if c.calibrated_at < latest.calibrated_at), None)
        if earlier is not None:
            computed = float(earlier.balance) + self.balances.ledger_delta(account_id, earlier.calibrated_at, latest.calibrated_at)
        else:
            # a lone calibration is its own anchor
            computed = float(latest.balance)
        diff = round(float(latest.balance) - computed, 4)
        consistent = abs(diff) <= settings.CALIBRATION_TOLERANCE and open_issues == 0
        return AccountReconciliationStatus(
            account_id=account_id,
            status="consistent" if consistent else "has_difference",
            latest_calibration_balance=float(latest.balance),
            latest_calibration_at=latest.calibrated_at,
            computed_balance=round(computed, 4),
            diff=diff,
            open_issues=open_issues,
        )

    def _set_status(self, issue_id: int, status: models.ReconciliationStatus) -> models.ReconciliationIssue:
        row = self.get_issue(issue_id)
        if row.status != models.ReconciliationStatus.OPEN:
            raise InvalidStateError(f"Issue is already {row.status.value}")
        row.status = status
        row.resolved_at = models.now_local_naive()
        self.db.commit()
        self.db.refresh(row)
        logger.info("reconciliation_issue_closed", issue_id=issue_id, status=status.value)
        return row

    def resolve(self, issue_id: int) -> models.ReconciliationIssue:
        return self._set_status(issue_id, models.ReconciliationStatus.RESOLVED)

    def ignore(self, issue_id: int) -> models.ReconciliationIssue:
        return self._set_status(issue_id, models.ReconciliationStatus.IGNORED)
