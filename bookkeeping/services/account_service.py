from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..core.exceptions import IntegrityViolationError, InvalidStateError, NotFoundError
from ..schemas import AccountOut, AccountTreeNode
from ..seed import ensure_system_accounts
from .balance_service import BalanceService
from .calibration_service import CalibrationService
from .currency_service import CurrencyService, RateTable, convert
from .transaction_service import TransactionService

logger = structlog.get_logger(__name__)

REAL_TYPES = (models.AccountType.ASSET, models.AccountType.LIABILITY)
NOMINAL_TYPES = (models.AccountType.INCOME, models.AccountType.EXPENSE)


def build_tree(nodes: Iterable[AccountTreeNode]) -> list[AccountTreeNode]:
    """Return a forest (list of roots) with children attached by ``parent_id``.

    Every level is stably sorted by ``sort_order``; ties keep input order.
    Nodes whose parent is not in the input become roots.
    """
    by_id = {n.id: n for n in nodes}
    for n in by_id.values():
        n.children = []
    roots: list[AccountTreeNode] = []
    for n in by_id.values():
        if n.parent_id and n.parent_id in by_id and n.parent_id != n.id:
            by_id[n.parent_id].children.append(n)
        else:
            roots.append(n)

    def _sort(level: list[AccountTreeNode]) -> None:
        level.sort(key=lambda x: x.sort_order)
        for child in level:
            _sort(child.children)

    _sort(roots)
    return roots


def aggregate(nodes: list[AccountTreeNode], target_currency: str, rates: RateTable) -> float:
    """Roll child balances up into groups, converted to ``target_currency``.

    Group balance and currency are overwritten; leaves keep their own. Returns the
    converted total of ``nodes``.
    """
    total = 0.0
    for node in nodes:
        if node.is_group:
            node.balance = round(aggregate(node.children, target_currency, rates), 4)
            node.currency = target_currency
        total += convert(node.balance, node.currency, target_currency, rates)
    return total


def iter_descendant_ids(accounts: Iterable[models.Account], root_ids: Iterable[int]) -> set[int]:
    """Ids of the given roots plus everything beneath them."""
    children: dict[int, list[int]] = {}
    for acc in accounts:
        if acc.parent_id is not None:
            children.setdefault(acc.parent_id, []).append(acc.id)
    found: set[int] = set()
    stack = list(root_ids)
    while stack:
        current = stack.pop()
        if current in found:
            continue
        found.add(current)
        stack.extend(children.get(current, []))
    return found


class AccountService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, account_id: int) -> models.Account:
        row = self.db.get(models.Account, account_id)
        if row is None:
            raise NotFoundError("Account")
        return row

    def get_all(
        self,
        *,
        is_active: Optional[bool] = None,
        account_class: Optional[models.AccountClass] = None,
        account_type: Optional[models.AccountType] = None,
    ) -> list[models.Account]:
        q = self.db.query(models.Account)
        if is_active is not None:
            q = q.filter(models.Account.is_active == bool(is_active))
        if account_class is not None:
            q = q.filter(models.Account.account_class == account_class)
        if account_type is not None:
            q = q.filter(models.Account.type == account_type)
        return q.order_by(models.Account.sort_order, models.Account.id).all()

    def descendant_ids(self, root_ids: Iterable[int]) -> set[int]:
        return iter_descendant_ids(self.db.query(models.Account).all(), root_ids)

    def leaf_balances(self, accounts: Iterable[models.Account], as_of: date | datetime) -> dict[int, float]:
        """Balances of real leaves in their own currency; nominal leaves and groups read 0."""
        accounts = list(accounts)
        real_ids = [a.id for a in accounts if a.is_real_leaf]
        balances = BalanceService(self.db).balances_at(real_ids, as_of)
        return {a.id: balances.get(a.id, 0.0) for a in accounts}

    def get_tree(
        self,
        *,
        target_currency: Optional[str] = None,
        as_of: Optional[date | datetime] = None,
        is_active: Optional[bool] = None,
        account_class: Optional[models.AccountClass] = None,
    ) -> list[AccountTreeNode]:
        target = target_currency or settings.BASE_CURRENCY
        moment = as_of or models.now_local_naive()
        rows = self.get_all(is_active=is_active, account_class=account_class)
        balances = self.leaf_balances(rows, moment)
        nodes = []
        for row in rows:
            node = AccountTreeNode(**AccountOut.model_validate(row).model_dump(), balance=balances.get(row.id, 0.0))
            nodes.append(node)
        roots = build_tree(nodes)
        aggregate(roots, target, CurrencyService(self.db).get_rates())
        return roots

    # ----- writes -----

    def create(self, payload: dict) -> models.Account:
        payload = dict(payload)
        opening_balance = payload.pop("opening_balance", None)
        opening_date = payload.pop("opening_date", None)

        parent_id = payload.get("parent_id")
        if parent_id is not None:
            parent = self.get(parent_id)
            if not parent.is_group:
                raise IntegrityViolationError("Parent account must be a group")
            payload["type"] = parent.type
            payload["account_class"] = parent.account_class
        if payload.get("type") is None or payload.get("account_class") is None:
            raise IntegrityViolationError("Root accounts need a type and an account class")

        acc_type = models.AccountType(payload["type"])
        acc_class = models.AccountClass(payload["account_class"])
        if acc_type == models.AccountType.EQUITY:
            raise IntegrityViolationError("Equity accounts are managed by the system")
        if acc_type in REAL_TYPES and acc_class != models.AccountClass.REAL:
            raise IntegrityViolationError("Asset and liability accounts must be real")
        if acc_type in NOMINAL_TYPES and acc_class != models.AccountClass.NOMINAL:
            raise IntegrityViolationError("Income and expense accounts must be nominal")
        payload["type"] = acc_type
        payload["account_class"] = acc_class

        is_real_leaf = acc_class == models.AccountClass.REAL and not payload.get("is_group")
        if is_real_leaf:
            payload["currency"] = payload.get("currency") or settings.BASE_CURRENCY
        else:
            payload["currency"] = None
            if opening_balance:
                raise IntegrityViolationError("Only real leaf accounts can carry an opening balance")

        row = models.Account(**payload)
        self.db.add(row)
        self.db.flush()

        if opening_balance:
            self._post_opening_balance(row, float(opening_balance), opening_date or models.now_local_naive())

        self.db.commit()
        self.db.refresh(row)
        logger.info("account_created", account_id=row.id, type=row.type.value, account_class=row.account_class.value)
        return row

    def _post_opening_balance(self, account: models.Account, amount: float, when: datetime) -> None:
        # liabilities are stored as negative balances
        if account.type == models.AccountType.LIABILITY and amount > 0:
            amount = -amount
        equity = ensure_system_accounts(self.db)
        TransactionService(self.db).create(
            {
                "from_account_id": equity.id,
                "to_account_id": account.id,
                "amount": amount,
                "occurred_at": when,
                "description": "Opening balance",
                "is_opening": True,
                "is_large_expense": False,
            },
            commit=False,
        )
        CalibrationService(self.db).create(
            account.id, amount, when, is_opening=True, note="Opening balance", commit=False
        )

    def update(self, account_id: int, patch: dict) -> models.Account:
        row = self.get(account_id)
        if not patch:
            return row
        if "parent_id" in patch and patch["parent_id"] != row.parent_id:
            if row.is_system:
                raise InvalidStateError("System accounts cannot be moved")
            new_parent_id = patch["parent_id"]
            if new_parent_id is not None:
                parent = self.get(new_parent_id)
                if not parent.is_group:
                    raise IntegrityViolationError("Parent account must be a group")
                if parent.type != row.type or parent.account_class != row.account_class:
                    raise IntegrityViolationError("Parent account must share type and class")
                if new_parent_id in self.descendant_ids([row.id]):
                    raise IntegrityViolationError("An account cannot be moved under itself")
        if "currency" in patch and patch["currency"] is not None and not row.is_real_leaf:
            raise IntegrityViolationError("Only real leaf accounts carry a currency")
        for key, value in patch.items():
            if key == "currency" and value is None:
                continue
            setattr(row, key, value)
        self.db.commit()
        self.db.refresh(row)
        return row

    def set_active(self, account_id: int, is_active: bool) -> models.Account:
        row = self.get(account_id)
        if row.is_system and not is_active:
            raise InvalidStateError("System accounts cannot be deactivated")
        row.is_active = is_active
        row.deactivated_at = None if is_active else models.now_local_naive()
        self.db.commit()
        self.db.refresh(row)
        return row

    def delete(self, account_id: int) -> None:
        row = self.get(account_id)
        if row.is_system:
            raise InvalidStateError("System accounts cannot be deleted")
        if self.db.query(models.Account.id).filter(models.Account.parent_id == row.id).first():
            raise InvalidStateError("Account has child accounts")
        T = models.Transaction
        if self.db.query(T.id).filter(or_(T.from_account_id == row.id, T.to_account_id == row.id)).first():
            raise InvalidStateError("Account has transactions")
        P = models.PeriodicTask
        if self.db.query(P.id).filter(or_(P.from_account_id == row.id, P.to_account_id == row.id)).first():
            raise InvalidStateError("Account is used by periodic tasks")
        if self.db.query(models.BudgetPlan.id).filter(models.BudgetPlan.category_account_id == row.id).first():
            raise InvalidStateError("Account is used by a budget plan")
        self.db.query(models.ReconciliationIssue).filter(models.ReconciliationIssue.account_id == row.id).delete(
            synchronize_session=False
        )
        self.db.delete(row)
        self.db.commit()
        logger.info("account_deleted", account_id=account_id)

    def merge(self, source_id: int, target_id: int) -> tuple[int, int]:
        """Move postings, calibrations and periodic tasks from source to target, then deactivate source."""
        if source_id == target_id:
            raise IntegrityViolationError("Cannot merge an account into itself")
        source = self.get(source_id)
        target = self.get(target_id)
        if source.is_system or target.is_system:
            raise InvalidStateError("System accounts cannot be merged")
        if source.is_group or target.is_group:
            raise IntegrityViolationError("Group accounts cannot be merged")
        if source.type != target.type or source.account_class != target.account_class:
            raise IntegrityViolationError("Merged accounts must share type and class")
        if source.currency != target.currency:
            raise IntegrityViolationError("Merged accounts must share a currency")

        T = models.Transaction
        between = (
            self.db.query(T.id)
            .filter(
                or_(
                    (T.from_account_id == source.id) & (T.to_account_id == target.id),
                    (T.from_account_id == target.id) & (T.to_account_id == source.id),
                )
            )
            .first()
        )
        if between is not None:
            raise IntegrityViolationError("Transactions between the two accounts would collapse onto one account")

        moved_out = self.db.query(T).filter(T.from_account_id == source.id).update(
            {T.from_account_id: target.id}, synchronize_session=False
        )
        moved_in = self.db.query(T).filter(T.to_account_id == source.id).update(
            {T.to_account_id: target.id}, synchronize_session=False
        )
        moved_calibrations = (
            self.db.query(models.Calibration)
            .filter(models.Calibration.account_id == source.id)
            .update({models.Calibration.account_id: target.id}, synchronize_session=False)
        )
        P = models.PeriodicTask
        self.db.query(P).filter(P.from_account_id == source.id).update({P.from_account_id: target.id}, synchronize_session=False)
        self.db.query(P).filter(P.to_account_id == source.id).update({P.to_account_id: target.id}, synchronize_session=False)
        self.db.query(models.ReconciliationIssue).filter(models.ReconciliationIssue.account_id == source.id).update(
            {models.ReconciliationIssue.account_id: target.id}, synchronize_session=False
        )

        source.is_active = False
        source.deactivated_at = models.now_local_naive()
        self.db.commit()
        self.db.expire_all()
        logger.info(
            "accounts_merged",
            source_id=source_id,
            target_id=target_id,
            moved_transactions=moved_out + moved_in,
            moved_calibrations=moved_calibrations,
        )
        return moved_out + moved_in, moved_calibrations

    # ----- currency sub-accounts -----

    def find_subaccount_by_currency(self, parent_id: int, currency: str) -> models.Account | None:
        return (
            self.db.query(models.Account)
            .filter(
                models.Account.parent_id == parent_id,
                models.Account.currency == currency,
                models.Account.is_group.is_(False),
            )
            .order_by(models.Account.id)
            .first()
        )

    def _create_currency_child(self, parent: models.Account, currency: str) -> models.Account:
        child = models.Account(
            name=currency,
            parent_id=parent.id,
            type=parent.type,
            account_class=parent.account_class,
            is_group=False,
            currency=currency,
            sort_order=parent.sort_order,
        )
        self.db.add(child)
        self.db.flush()
        return child

    def _move_account_refs(self, source_id: int, target_id: int) -> int:
        """Repoint postings, calibrations, periodic tasks and issues; returns moved postings."""
        T = models.Transaction
        moved = self.db.query(T).filter(T.from_account_id == source_id).update(
            {T.from_account_id: target_id}, synchronize_session=False
        )
        moved += self.db.query(T).filter(T.to_account_id == source_id).update(
            {T.to_account_id: target_id}, synchronize_session=False
        )
        self.db.query(models.Calibration).filter(models.Calibration.account_id == source_id).update(
            {models.Calibration.account_id: target_id}, synchronize_session=False
        )
        P = models.PeriodicTask
        self.db.query(P).filter(P.from_account_id == source_id).update({P.from_account_id: target_id}, synchronize_session=False)
        self.db.query(P).filter(P.to_account_id == source_id).update({P.to_account_id: target_id}, synchronize_session=False)
        self.db.query(models.ReconciliationIssue).filter(models.ReconciliationIssue.account_id == source_id).update(
            {models.ReconciliationIssue.account_id: target_id}, synchronize_session=False
        )
        return moved

    def add_currency_subaccount(self, account_id: int, currency: str, *, commit: bool = True) -> tuple[list[str], int]:
        """Give a real account a leaf per currency.

        A real leaf becomes a group: a child in its old currency takes over its
        postings and calibrations, and a second child is added for ``currency``.
        Returns the created currency codes and the number of moved postings.
        """
        account = self.get(account_id)
        currency = currency.strip().upper()
        if account.is_system:
            raise InvalidStateError("System accounts cannot hold currency sub-accounts")
        if account.account_class != models.AccountClass.REAL:
            raise IntegrityViolationError("Only real accounts hold currency sub-accounts")

        created: list[str] = []
        moved = 0
        if not account.is_group:
            original_currency = account.currency or settings.BASE_CURRENCY
            account.is_group = True
            account.currency = None
            self.db.flush()
            original_child = self._create_currency_child(account, original_currency)
            created.append(original_currency)
            moved = self._move_account_refs(account.id, original_child.id)
            if currency != original_currency:
                self._create_currency_child(account, currency)
                created.append(currency)
        elif self.find_subaccount_by_currency(account.id, currency) is None:
            self._create_currency_child(account, currency)
            created.append(currency)

        self.db.flush()
        if commit:
            self.db.commit()
        self.db.expire_all()
        logger.info("currency_subaccount_added", account_id=account_id, created=created, moved_transactions=moved)
        return created, moved

    def resolve_for_currency(self, account_id: int, currency: Optional[str], *, commit: bool = True) -> models.Account:
        """The leaf under ``account_id`` that holds ``currency``, created on demand."""
        account = self.get(account_id)
        if not currency or account.account_class != models.AccountClass.REAL or account.is_system:
            return account
        currency = currency.strip().upper()
        if not account.is_group and (account.currency or settings.BASE_CURRENCY) == currency:
            return account
        if not account.is_group:
            self.add_currency_subaccount(account.id, currency, commit=commit)
        sub = self.find_subaccount_by_currency(account.id, currency)
        if sub is None:
            sub = self._create_currency_child(account, currency)
            if commit:
                self.db.commit()
                self.db.refresh(sub)
            logger.info("currency_subaccount_added", account_id=account_id, created=[currency], moved_transactions=0)
        return sub
