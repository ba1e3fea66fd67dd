from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Index,
    Boolean,
    JSON,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .core.config import settings
from .core.database import Base


LOCAL_ZONE = ZoneInfo(settings.TIMEZONE)


def now_local_naive() -> datetime:
    """Return naive datetime normalized to configured local timezone."""
    return datetime.now(LOCAL_ZONE).replace(tzinfo=None)


def today_local() -> date:
    return now_local_naive().date()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, onupdate=now_local_naive, nullable=False)


class AccountType(str, Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    INCOME = "income"
    EXPENSE = "expense"
    EQUITY = "equity"


class AccountClass(str, Enum):
    """Real accounts hold money; nominal accounts only classify flows."""

    REAL = "real"
    NOMINAL = "nominal"


class TransactionNature(str, Enum):
    REGULAR = "regular"
    UNEXPECTED = "unexpected"
    PERIODIC = "periodic"


class TransactionType(str, Enum):
    """Derived on read from the account types of both legs."""

    OPENING = "opening"
    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"


def infer_transaction_type(from_type: AccountType | str, to_type: AccountType | str, is_opening: bool = False) -> TransactionType:
    from_type = AccountType(from_type)
    to_type = AccountType(to_type)
    if is_opening or from_type == AccountType.EQUITY:
        return TransactionType.OPENING
    if to_type == AccountType.EXPENSE:
        return TransactionType.EXPENSE
    if from_type == AccountType.INCOME:
        return TransactionType.INCOME
    return TransactionType.TRANSFER


class LinkType(str, Enum):
    REIMBURSEMENT = "reimbursement"
    REFUND = "refund"
    SPLIT = "split"
    CORRECTION = "correction"


class CalibrationSource(str, Enum):
    MANUAL = "manual"
    IMPORT = "import"


class BudgetPlanType(str, Enum):
    CATEGORY = "category"
    TOTAL = "total"


class BudgetPeriodKind(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BudgetPlanStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"


class AccountFilterMode(str, Enum):
    ALL = "all"
    INCLUDE = "include"
    EXCLUDE = "exclude"


class IndicatorStatus(str, Enum):
    STAR = "star"
    GREEN = "green"
    RED = "red"
    NONE = "none"


class ReconciliationStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class Account(Base, TimestampMixin):
    __table_args__ = (
        CheckConstraint(
            "(is_group = 0 AND account_class = 'real') OR currency IS NULL",
            name="ck_account_currency_real_leaf_only",
        ),
        Index("ix_account_parent", "parent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType, values_callable=lambda e: [m.value for m in e]), nullable=False)
    account_class: Mapped[AccountClass] = mapped_column(
        SAEnum(AccountClass, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    is_group: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("account.id", ondelete="RESTRICT"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    parent: Mapped["Account | None"] = relationship(remote_side="Account.id", back_populates="children")
    children: Mapped[list["Account"]] = relationship(back_populates="parent")
    calibrations: Mapped[list["Calibration"]] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def is_real_leaf(self) -> bool:
        return not self.is_group and self.account_class == AccountClass.REAL


class Transaction(Base, TimestampMixin):
    __table_args__ = (
        CheckConstraint("from_account_id <> to_account_id", name="ck_transaction_distinct_legs"),
        CheckConstraint("amount <> 0", name="ck_transaction_amount_nonzero"),
        Index("ix_transaction_from_date", "from_account_id", "occurred_at"),
        Index("ix_transaction_to_date", "to_account_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_account_id: Mapped[int] = mapped_column(ForeignKey("account.id", ondelete="RESTRICT"), nullable=False)
    to_account_id: Mapped[int] = mapped_column(ForeignKey("account.id", ondelete="RESTRICT"), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    from_amount: Mapped[float | None] = mapped_column(Numeric(20, 4), nullable=True)
    to_amount: Mapped[float | None] = mapped_column(Numeric(20, 4), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    nature: Mapped[TransactionNature] = mapped_column(
        SAEnum(TransactionNature, values_callable=lambda e: [m.value for m in e]),
        default=TransactionNature.REGULAR,
        nullable=False,
    )
    is_opening: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_large_expense: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    linked_transaction_id: Mapped[int | None] = mapped_column(ForeignKey("transaction.id", ondelete="SET NULL"), nullable=True)
    link_type: Mapped[LinkType | None] = mapped_column(
        SAEnum(LinkType, values_callable=lambda e: [m.value for m in e]), nullable=True
    )

    from_account: Mapped[Account] = relationship(foreign_keys=[from_account_id])
    to_account: Mapped[Account] = relationship(foreign_keys=[to_account_id])

    @property
    def transaction_type(self) -> TransactionType:
        return infer_transaction_type(self.from_account.type, self.to_account.type, self.is_opening)


class Calibration(Base, TimestampMixin):
    __table_args__ = (Index("ix_calibration_account_date", "account_id", "calibrated_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    balance: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    calibrated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    source: Mapped[CalibrationSource] = mapped_column(
        SAEnum(CalibrationSource, values_callable=lambda e: [m.value for m in e]),
        default=CalibrationSource.MANUAL,
        nullable=False,
    )
    is_opening: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    account: Mapped[Account] = relationship(back_populates="calibrations")


class CurrencyRate(Base, TimestampMixin):
    __tablename__ = "currency_rate"
    __table_args__ = (UniqueConstraint("from_currency", "to_currency", name="uq_currency_rate_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    rate: Mapped[float] = mapped_column(Numeric(20, 8), nullable=False)


class BudgetPlan(Base, TimestampMixin):
    __tablename__ = "budget_plan"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    plan_type: Mapped[BudgetPlanType] = mapped_column(
        SAEnum(BudgetPlanType, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    category_account_id: Mapped[int | None] = mapped_column(ForeignKey("account.id", ondelete="RESTRICT"), nullable=True)
    period: Mapped[BudgetPeriodKind] = mapped_column(
        SAEnum(BudgetPeriodKind, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    hard_limit: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    limit_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="CNY")
    soft_limit_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    account_filter_mode: Mapped[AccountFilterMode] = mapped_column(
        SAEnum(AccountFilterMode, values_callable=lambda e: [m.value for m in e]),
        default=AccountFilterMode.ALL,
        nullable=False,
    )
    account_filter_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    included_category_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BudgetPlanStatus] = mapped_column(
        SAEnum(BudgetPlanStatus, values_callable=lambda e: [m.value for m in e]),
        default=BudgetPlanStatus.ACTIVE,
        nullable=False,
    )
    round_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    category: Mapped[Account | None] = relationship(foreign_keys=[category_account_id])
    records: Mapped[list["BudgetPeriodRecord"]] = relationship(back_populates="plan", cascade="all, delete-orphan")


class BudgetPeriodRecord(Base, TimestampMixin):
    __tablename__ = "budget_period_record"
    __table_args__ = (
        UniqueConstraint("plan_id", "round_number", "period_index", name="uq_budget_period_slot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("budget_plan.id", ondelete="CASCADE"), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    period_index: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    actual_amount: Mapped[float] = mapped_column(Numeric(20, 4), default=0, nullable=False)
    hard_limit: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    soft_limit: Mapped[float | None] = mapped_column(Numeric(20, 4), nullable=True)
    indicator_status: Mapped[IndicatorStatus] = mapped_column(
        SAEnum(IndicatorStatus, values_callable=lambda e: [m.value for m in e]),
        default=IndicatorStatus.NONE,
        nullable=False,
    )

    plan: Mapped[BudgetPlan] = relationship(back_populates="records")


class PeriodicTask(Base, TimestampMixin):
    __tablename__ = "periodic_task"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_periodic_task_amount_positive"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_account_id: Mapped[int] = mapped_column(ForeignKey("account.id", ondelete="RESTRICT"), nullable=False)
    to_account_id: Mapped[int] = mapped_column(ForeignKey("account.id", ondelete="RESTRICT"), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    from_amount: Mapped[float | None] = mapped_column(Numeric(20, 4), nullable=True)
    to_amount: Mapped[float | None] = mapped_column(Numeric(20, 4), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    frequency: Mapped[str] = mapped_column(String(32), nullable=False)
    first_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ReconciliationIssue(Base, TimestampMixin):
    __tablename__ = "reconciliation_issue"
    __table_args__ = (
        UniqueConstraint("start_calibration_id", "end_calibration_id", name="uq_reconciliation_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    start_calibration_id: Mapped[int] = mapped_column(ForeignKey("calibration.id", ondelete="RESTRICT"), nullable=False)
    end_calibration_id: Mapped[int] = mapped_column(ForeignKey("calibration.id", ondelete="RESTRICT"), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expected_delta: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    actual_delta: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    diff: Mapped[float] = mapped_column(Numeric(20, 4), nullable=False)
    status: Mapped[ReconciliationStatus] = mapped_column(
        SAEnum(ReconciliationStatus, values_callable=lambda e: [m.value for m in e]),
        default=ReconciliationStatus.OPEN,
        nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class DailyCheckin(Base, TimestampMixin):
    __tablename__ = "daily_checkin"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    check_date: Mapped[date] = mapped_column(Date, unique=True, nullable=False)
