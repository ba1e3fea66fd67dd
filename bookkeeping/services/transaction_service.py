from __future__ import annotations

import statistics
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from .. import models
from ..core.config import settings
from ..core.exceptions import IntegrityViolationError, NotFoundError
from ..models import infer_transaction_type
from .currency_service import CurrencyService, convert

logger = structlog.get_logger(__name__)

__all__ = ["TransactionService", "infer_transaction_type"]


class TransactionService:
    """Validated writes and filtered reads over the posting ledger."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ----- reads -----

    def get(self, transaction_id: int) -> models.Transaction:
        row = (
            self.db.query(models.Transaction)
            .options(selectinload(models.Transaction.from_account), selectinload(models.Transaction.to_account))
            .filter(models.Transaction.id == transaction_id)
            .first()
        )
        if row is None:
            raise NotFoundError("Transaction")
        return row

    def list(
        self,
        *,
        account_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        transaction_type: Optional[models.TransactionType] = None,
        needs_review: Optional[bool] = None,
        is_large_expense: Optional[bool] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> tuple[list[models.Transaction], int]:
        T = models.Transaction
        q = self.db.query(T).options(selectinload(T.from_account), selectinload(T.to_account))
        if account_id is not None:
            q = q.filter(or_(T.from_account_id == account_id, T.to_account_id == account_id))
        if start is not None:
            q = q.filter(T.occurred_at >= start)
        if end is not None:
            q = q.filter(T.occurred_at <= end)
        if needs_review is not None:
            q = q.filter(T.needs_review == bool(needs_review))
        if is_large_expense is not None:
            q = q.filter(T.is_large_expense == bool(is_large_expense))
        q = q.order_by(T.occurred_at.desc(), T.id.desc())

        if transaction_type is not None:
            # the semantic type is derived from both legs, so filter after loading
            rows = [r for r in q.all() if r.transaction_type == transaction_type]
            total = len(rows)
            rows = rows[offset:]
            if limit is not None:
                rows = rows[:limit]
            return rows, total

        total = q.count()
        if offset:
            q = q.offset(offset)
        if limit is not None:
            q = q.limit(limit)
        return q.all(), total

    # ----- validation -----

    def _load_account(self, account_id: int) -> models.Account:
        account = self.db.get(models.Account, account_id)
        if account is None:
            raise IntegrityViolationError(f"Account {account_id} does not exist")
        return account

    def normalize_posting(self, values: dict[str, Any]) -> tuple[dict[str, Any], models.Account, models.Account]:
        """Check posting rules and fill leg amounts; raises before anything is written."""
        from_acc = self._load_account(values["from_account_id"])
        to_acc = self._load_account(values["to_account_id"])

        if from_acc.id == to_acc.id:
            raise IntegrityViolationError("A transaction needs two different accounts")
        if from_acc.is_group or to_acc.is_group:
            raise IntegrityViolationError("Group accounts cannot be posted to")

        amount = values.get("amount")
        if amount is None or float(amount) == 0:
            raise IntegrityViolationError("Amount must be non-zero")
        if float(amount) < 0 and not values.get("is_opening"):
            raise IntegrityViolationError("Amount must be positive")

        both_real = from_acc.account_class == models.AccountClass.REAL and to_acc.account_class == models.AccountClass.REAL
        if not both_real:
            if values.get("from_amount") is not None or values.get("to_amount") is not None:
                raise IntegrityViolationError("Leg amounts are only allowed between two real accounts")
            values["from_amount"] = None
            values["to_amount"] = None
        elif from_acc.currency != to_acc.currency:
            if values.get("from_amount") is None:
                values["from_amount"] = float(amount)
            if values.get("to_amount") is None:
                rates = CurrencyService(self.db).get_rates()
                values["to_amount"] = round(convert(float(amount), from_acc.currency, to_acc.currency, rates), 4)
        else:
            values["from_amount"] = None
            values["to_amount"] = None

        return values, from_acc, to_acc

    def _is_large_amount(
        self,
        tx_type: models.TransactionType,
        from_acc: models.Account,
        to_acc: models.Account,
        amount: float,
        occurred_at: datetime,
    ) -> bool:
        """Flag postings above mean + 3 * stddev of the real account's recent same-type history."""
        fallback = settings.LARGE_AMOUNT_FALLBACK
        if tx_type == models.TransactionType.EXPENSE:
            real_account, leg = from_acc, models.Transaction.from_account_id
            counter_type = models.AccountType.EXPENSE
            counter_leg = models.Transaction.to_account
        elif tx_type == models.TransactionType.INCOME:
            real_account, leg = to_acc, models.Transaction.to_account_id
            counter_type = models.AccountType.INCOME
            counter_leg = models.Transaction.from_account
        else:
            return False

        window_start = occurred_at - timedelta(days=settings.LARGE_AMOUNT_WINDOW_DAYS)
        samples = [
            float(row[0])
            for row in self.db.query(models.Transaction.amount)
            .filter(
                leg == real_account.id,
                counter_leg.has(models.Account.type == counter_type),
                models.Transaction.is_opening.is_(False),
                models.Transaction.occurred_at >= window_start,
                models.Transaction.occurred_at < occurred_at,
            )
            .all()
        ]
        threshold = fallback
        if len(samples) >= settings.LARGE_AMOUNT_MIN_SAMPLES:
            computed = statistics.fmean(samples) + 3 * statistics.pstdev(samples)
            if computed > 100:
                threshold = computed
        return abs(float(amount)) > threshold

    def _adjust_opening_date(self, account: models.Account, occurred_at: datetime) -> None:
        """Move an account's opening posting (and opening calibration) to just before an earlier posting."""
        if account.is_system or account.account_class != models.AccountClass.REAL:
            return
        opening = (
            self.db.query(models.Transaction)
            .filter(models.Transaction.to_account_id == account.id, models.Transaction.is_opening.is_(True))
            .first()
        )
        if opening is None or occurred_at >= opening.occurred_at:
            return
        new_date = occurred_at - timedelta(seconds=1)
        (
            self.db.query(models.Calibration)
            .filter(
                models.Calibration.account_id == account.id,
                models.Calibration.is_opening.is_(True),
                models.Calibration.calibrated_at == opening.occurred_at,
            )
            .update({models.Calibration.calibrated_at: new_date}, synchronize_session=False)
        )
        opening.occurred_at = new_date
        logger.info("opening_date_adjusted", account_id=account.id, opening_transaction_id=opening.id, occurred_at=new_date.isoformat())

    # ----- writes -----

    def _resolve_currency_legs(self, values: dict[str, Any]) -> None:
        """Route each side to the leaf holding the requested currency, creating it if needed."""
        from .account_service import AccountService

        accounts = AccountService(self.db)
        for side in ("from", "to"):
            currency = values.pop(f"{side}_currency", None)
            if currency:
                leaf = accounts.resolve_for_currency(values[f"{side}_account_id"], currency, commit=False)
                values[f"{side}_account_id"] = leaf.id

    def create(self, payload: dict[str, Any], *, commit: bool = True) -> models.Transaction:
        payload = dict(payload)
        self._resolve_currency_legs(payload)
        values, from_acc, to_acc = self.normalize_posting(payload)
        is_opening = bool(values.get("is_opening"))
        tx_type = infer_transaction_type(from_acc.type, to_acc.type, is_opening)

        if values.get("is_large_expense") is None:
            values["is_large_expense"] = self._is_large_amount(
                tx_type, from_acc, to_acc, float(values["amount"]), values["occurred_at"]
            )

        if not is_opening:
            self._adjust_opening_date(from_acc, values["occurred_at"])
            self._adjust_opening_date(to_acc, values["occurred_at"])

        row = models.Transaction(
            from_account_id=from_acc.id,
            to_account_id=to_acc.id,
            amount=values["amount"],
            from_amount=values.get("from_amount"),
            to_amount=values.get("to_amount"),
            occurred_at=values["occurred_at"],
            description=values.get("description"),
            nature=values.get("nature") or models.TransactionNature.REGULAR,
            is_opening=is_opening,
            is_large_expense=bool(values["is_large_expense"]),
            is_starred=bool(values.get("is_starred", False)),
            needs_review=bool(values.get("needs_review", False)),
        )
        self.db.add(row)
        if commit:
            self.db.commit()
            self.db.refresh(row)
        else:
            self.db.flush()
        logger.info(
            "transaction_created",
            transaction_id=row.id,
            transaction_type=tx_type.value,
            from_account_id=row.from_account_id,
            to_account_id=row.to_account_id,
            amount=float(row.amount),
        )
        return row

    def update(self, transaction_id: int, patch: dict[str, Any]) -> models.Transaction:
        row = self.get(transaction_id)
        if not patch:
            return row
        values = {
            "from_account_id": row.from_account_id,
            "to_account_id": row.to_account_id,
            "amount": float(row.amount),
            "from_amount": None if row.from_amount is None else float(row.from_amount),
            "to_amount": None if row.to_amount is None else float(row.to_amount),
            "is_opening": row.is_opening,
        }
        # leg amounts belong to the old pair of accounts unless the patch restates them
        if "from_account_id" in patch or "to_account_id" in patch or "amount" in patch:
            values["from_amount"] = None
            values["to_amount"] = None
        values.update(patch)
        values, from_acc, to_acc = self.normalize_posting(values)

        for key in ("from_account_id", "to_account_id", "amount", "from_amount", "to_amount"):
            setattr(row, key, values[key])
        for key in ("occurred_at", "description", "nature", "is_large_expense", "is_starred", "needs_review"):
            if key in patch and (patch[key] is not None or key == "description"):
                setattr(row, key, patch[key])
        if "occurred_at" in patch and not row.is_opening:
            self._adjust_opening_date(from_acc, row.occurred_at)
            self._adjust_opening_date(to_acc, row.occurred_at)
        self.db.commit()
        self.db.refresh(row)
        logger.info("transaction_updated", transaction_id=row.id, fields=sorted(patch))
        return row

    def delete(self, transaction_id: int) -> None:
        row = self.get(transaction_id)
        self.db.delete(row)
        self.db.commit()
        logger.info("transaction_deleted", transaction_id=transaction_id)

    def link(self, transaction_id: int, linked_transaction_id: int, link_type: models.LinkType) -> models.Transaction:
        if transaction_id == linked_transaction_id:
            raise IntegrityViolationError("A transaction cannot be linked to itself")
        row = self.get(transaction_id)
        self.get(linked_transaction_id)
        row.linked_transaction_id = linked_transaction_id
        row.link_type = link_type
        self.db.commit()
        self.db.refresh(row)
        return row

    def unlink(self, transaction_id: int) -> models.Transaction:
        row = self.get(transaction_id)
        row.linked_transaction_id = None
        row.link_type = None
        self.db.commit()
        self.db.refresh(row)
        return row
