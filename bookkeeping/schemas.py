from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import (
    AccountClass,
    AccountFilterMode,
    AccountType,
    BudgetPeriodKind,
    BudgetPlanStatus,
    BudgetPlanType,
    CalibrationSource,
    IndicatorStatus,
    LinkType,
    ReconciliationStatus,
    TransactionNature,
    TransactionType,
)


FREQUENCY_PATTERN = re.compile(r"^(daily|weekly|biweekly|monthly|quarterly|yearly|custom:[1-9][0-9]*)$")


def _normalize_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    trimmed = v.strip().upper()
    if not trimmed:
        raise ValueError("currency must not be blank")
    return trimmed


# ----- Accounts -----

class AccountBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    is_group: bool = False
    currency: Optional[str] = None
    parent_id: Optional[int] = None
    sort_order: int = 0

    @field_validator("currency")
    def upper_currency(cls, v: Optional[str]):
        return _normalize_currency(v)


class AccountCreate(AccountBase):
    # type/class may be omitted for children; they inherit from the parent
    type: Optional[AccountType] = None
    account_class: Optional[AccountClass] = None
    opening_balance: Optional[float] = None
    opening_date: Optional[datetime] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    currency: Optional[str] = None
    parent_id: Optional[int] = None
    sort_order: Optional[int] = None

    @field_validator("currency")
    def upper_currency(cls, v: Optional[str]):
        return _normalize_currency(v)


class AccountOut(BaseModel):
    id: int
    name: str
    type: AccountType
    account_class: AccountClass
    is_group: bool
    currency: Optional[str] = None
    parent_id: Optional[int] = None
    is_active: bool = True
    is_system: bool = False
    sort_order: int = 0

    model_config = ConfigDict(from_attributes=True)


class AccountWithBalance(AccountOut):
    balance: float = 0.0


class AccountTreeNode(AccountOut):
    balance: float = 0.0
    children: list["AccountTreeNode"] = Field(default_factory=list)


class AccountActiveToggle(BaseModel):
    is_active: bool


class AccountMergeRequest(BaseModel):
    source_id: int = Field(..., gt=0)
    target_id: int = Field(..., gt=0)

    @model_validator(mode="after")
    def distinct_accounts(self):
        if self.source_id == self.target_id:
            raise ValueError("source_id and target_id must differ")
        return self


class AccountMergeResult(BaseModel):
    source_id: int
    target_id: int
    moved_transactions: int
    moved_calibrations: int


class AccountBalanceOut(BaseModel):
    account_id: int
    as_of: datetime
    balance: float
    currency: Optional[str] = None


class BalancePoint(BaseModel):
    as_of: date
    balance: float


class BalanceHistoryOut(BaseModel):
    account_id: int
    currency: Optional[str] = None
    points: list[BalancePoint]


class CurrencySubAccountRequest(BaseModel):
    currency: str

    @field_validator("currency")
    def upper_currency(cls, v: str):
        return _normalize_currency(v)


class CurrencySubAccountResult(BaseModel):
    account_id: int
    created: list[str]
    moved_transactions: int


# ----- Transactions -----

class TransactionCreate(BaseModel):
    from_account_id: int = Field(..., gt=0)
    to_account_id: int = Field(..., gt=0)
    amount: float
    from_amount: Optional[float] = None
    to_amount: Optional[float] = None
    occurred_at: datetime
    description: Optional[str] = None
    nature: TransactionNature = TransactionNature.REGULAR
    is_opening: bool = False
    # None lets the ledger decide from recent history
    is_large_expense: Optional[bool] = None
    is_starred: bool = False
    needs_review: bool = False
    # route the leg to the leaf of this currency under the given account
    from_currency: Optional[str] = None
    to_currency: Optional[str] = None

    @field_validator("from_currency", "to_currency")
    def upper_currency(cls, v: Optional[str]):
        return _normalize_currency(v)


class TransactionUpdate(BaseModel):
    from_account_id: Optional[int] = Field(default=None, gt=0)
    to_account_id: Optional[int] = Field(default=None, gt=0)
    amount: Optional[float] = None
    from_amount: Optional[float] = None
    to_amount: Optional[float] = None
    occurred_at: Optional[datetime] = None
    description: Optional[str] = None
    nature: Optional[TransactionNature] = None
    is_large_expense: Optional[bool] = None
    is_starred: Optional[bool] = None
    needs_review: Optional[bool] = None


class TransactionOut(BaseModel):
    id: int
    from_account_id: int
    to_account_id: int
    amount: float
    from_amount: Optional[float] = None
    to_amount: Optional[float] = None
    occurred_at: datetime
    description: Optional[str] = None
    nature: TransactionNature
    transaction_type: TransactionType
    is_opening: bool
    is_large_expense: bool
    is_starred: bool
    needs_review: bool
    linked_transaction_id: Optional[int] = None
    link_type: Optional[LinkType] = None

    model_config = ConfigDict(from_attributes=True)


class TransactionListOut(BaseModel):
    items: list[TransactionOut]
    total: int


class TransactionLinkRequest(BaseModel):
    linked_transaction_id: int = Field(..., gt=0)
    link_type: LinkType


# ----- Calibrations -----

class CalibrationCreate(BaseModel):
    account_id: int = Field(..., gt=0)
    balance: float
    calibrated_at: datetime
    source: CalibrationSource = CalibrationSource.MANUAL
    is_opening: bool = False
    note: Optional[str] = None


class CalibrationOut(BaseModel):
    id: int
    account_id: int
    balance: float
    calibrated_at: datetime
    source: CalibrationSource
    is_opening: bool
    note: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ----- Currency -----

class CurrencyRateIn(BaseModel):
    from_currency: str
    to_currency: str
    rate: float = Field(..., gt=0)

    @field_validator("from_currency", "to_currency")
    def upper_currency(cls, v: str):
        return _normalize_currency(v)


class CurrencyRateOut(CurrencyRateIn):
    pass


class ConversionOut(BaseModel):
    amount: float
    from_currency: str
    to_currency: str
    rate: float
    converted: float


# ----- Budgets -----

class BudgetPlanCreate(BaseModel):
    name: Optional[str] = None
    plan_type: BudgetPlanType
    category_account_id: Optional[int] = None
    period: BudgetPeriodKind
    hard_limit: float = Field(..., gt=0)
    limit_currency: Optional[str] = None
    soft_limit_enabled: bool = True
    account_filter_mode: AccountFilterMode = AccountFilterMode.ALL
    account_filter_ids: list[int] = Field(default_factory=list)
    included_category_ids: list[int] = Field(default_factory=list)
    start_date: date

    @field_validator("limit_currency")
    def upper_currency(cls, v: str):
        return _normalize_currency(v)

    @model_validator(mode="after")
    def category_required(self):
        if self.plan_type == BudgetPlanType.CATEGORY and self.category_account_id is None:
            raise ValueError("category plans require category_account_id")
        if self.plan_type == BudgetPlanType.TOTAL and self.category_account_id is not None:
            raise ValueError("total plans must not set category_account_id")
        return self


class BudgetPlanUpdate(BaseModel):
    name: Optional[str] = None
    hard_limit: Optional[float] = Field(default=None, gt=0)
    soft_limit_enabled: Optional[bool] = None
    account_filter_mode: Optional[AccountFilterMode] = None
    account_filter_ids: Optional[list[int]] = None
    included_category_ids: Optional[list[int]] = None
    # changing the period starts a new round
    period: Optional[BudgetPeriodKind] = None
    start_date: Optional[date] = None


class BudgetRestartRequest(BaseModel):
    start_date: Optional[date] = None
    hard_limit: Optional[float] = Field(default=None, gt=0)


class BudgetPeriodRecordOut(BaseModel):
    id: int
    plan_id: int
    round_number: int
    period_index: int
    period_start: date
    period_end: date
    actual_amount: float
    hard_limit: float
    soft_limit: Optional[float] = None
    indicator_status: IndicatorStatus

    model_config = ConfigDict(from_attributes=True)


class BudgetPlanOut(BaseModel):
    id: int
    name: Optional[str] = None
    plan_type: BudgetPlanType
    category_account_id: Optional[int] = None
    period: BudgetPeriodKind
    hard_limit: float
    limit_currency: str
    soft_limit_enabled: bool
    account_filter_mode: AccountFilterMode
    account_filter_ids: list[int]
    included_category_ids: list[int]
    start_date: date
    end_date: date
    status: BudgetPlanStatus
    round_number: int

    model_config = ConfigDict(from_attributes=True)


class BudgetPlanDetailOut(BudgetPlanOut):
    records: list[BudgetPeriodRecordOut] = Field(default_factory=list)
    current_period: Optional[BudgetPeriodRecordOut] = None


class BudgetPeriodValues(BaseModel):
    actual_amount: float
    soft_limit: Optional[float] = None
    indicator_status: IndicatorStatus


class BudgetRecalculationItem(BaseModel):
    plan_id: int
    plan_name: Optional[str] = None
    period_id: int
    period_start: date
    period_end: date
    old_values: BudgetPeriodValues
    new_values: BudgetPeriodValues


class BudgetRecalculationRequest(BaseModel):
    plan_ids: Optional[list[int]] = None
    as_of: Optional[date] = None


class BudgetRecalculationCommit(BaseModel):
    items: list[BudgetRecalculationItem]


class BudgetRecalculationCommitResult(BaseModel):
    updated: int


class BudgetDashboardItem(BaseModel):
    plan_id: int
    name: Optional[str] = None
    plan_type: BudgetPlanType
    status: BudgetPlanStatus
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    actual_amount: float = 0.0
    hard_limit: float
    soft_limit: Optional[float] = None
    indicator_status: IndicatorStatus = IndicatorStatus.NONE
    usage_ratio: float = 0.0


class BudgetDashboardOut(BaseModel):
    as_of: date
    currency: str
    total_actual: float
    total_limit: float
    indicator_counts: dict[str, int]
    plans: list[BudgetDashboardItem]


# ----- Periodic tasks -----

class PeriodicTaskCreate(BaseModel):
    from_account_id: int = Field(..., gt=0)
    to_account_id: int = Field(..., gt=0)
    amount: float = Field(..., gt=0)
    from_amount: Optional[float] = Field(default=None, gt=0)
    to_amount: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = None
    frequency: str
    first_run_date: date

    @field_validator("frequency")
    def valid_frequency(cls, v: str):
        v = v.strip().lower()
        if not FREQUENCY_PATTERN.match(v):
            raise ValueError("frequency must be daily/weekly/biweekly/monthly/quarterly/yearly/custom:N")
        return v


class PeriodicTaskUpdate(BaseModel):
    from_account_id: Optional[int] = Field(default=None, gt=0)
    to_account_id: Optional[int] = Field(default=None, gt=0)
    amount: Optional[float] = Field(default=None, gt=0)
    from_amount: Optional[float] = Field(default=None, gt=0)
    to_amount: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = None
    frequency: Optional[str] = None
    next_run_date: Optional[date] = None
    is_active: Optional[bool] = None

    @field_validator("frequency")
    def valid_frequency(cls, v: Optional[str]):
        if v is None:
            return v
        v = v.strip().lower()
        if not FREQUENCY_PATTERN.match(v):
            raise ValueError("frequency must be daily/weekly/biweekly/monthly/quarterly/yearly/custom:N")
        return v


class PeriodicTaskOut(BaseModel):
    id: int
    from_account_id: int
    to_account_id: int
    amount: float
    from_amount: Optional[float] = None
    to_amount: Optional[float] = None
    description: Optional[str] = None
    frequency: str
    first_run_date: date
    next_run_date: date
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class PeriodicTaskFailure(BaseModel):
    task_id: int
    error: str


class PeriodicExecutionResult(BaseModel):
    executed_tasks: int = 0
    created_transactions: int = 0
    failures: list[PeriodicTaskFailure] = Field(default_factory=list)


# ----- Reconciliation -----

class ReconciliationIssueOut(BaseModel):
    id: int
    account_id: int
    start_calibration_id: int
    end_calibration_id: int
    period_start: datetime
    period_end: datetime
    expected_delta: float
    actual_delta: float
    diff: float
    status: ReconciliationStatus
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReconciliationCheckResult(BaseModel):
    account_id: int
    status: str  # checked | insufficient_calibrations | error
    checked_pairs: int = 0
    issues: list[ReconciliationIssueOut] = Field(default_factory=list)
    error: Optional[str] = None


class ReconciliationBatchRequest(BaseModel):
    account_ids: Optional[list[int]] = None


class AccountReconciliationStatus(BaseModel):
    account_id: int
    status: str  # no_calibration | consistent | has_difference
    latest_calibration_balance: Optional[float] = None
    latest_calibration_at: Optional[datetime] = None
    computed_balance: Optional[float] = None
    diff: Optional[float] = None
    open_issues: int = 0


# ----- Check-in -----

class CalibrationReminder(BaseModel):
    account_id: int
    name: str
    currency: Optional[str] = None
    last_calibrated_at: Optional[datetime] = None
    days_since: Optional[int] = None


class RefreshResult(BaseModel):
    periodic: PeriodicExecutionResult
    expired_plans: int = 0
    refreshed_plans: int = 0
    reminders: list[CalibrationReminder] = Field(default_factory=list)


class CheckinResult(BaseModel):
    check_date: date
    is_first_checkin: bool
    refresh: RefreshResult
