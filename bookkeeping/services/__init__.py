"""
Services package

Business logic service classes; each takes a SQLAlchemy ``Session``.
"""

from .account_service import AccountService, aggregate, build_tree
from .balance_service import BalanceService
from .budget_service import BudgetService, classify_indicator
from .calibration_service import CalibrationService
from .checkin_service import CheckinService
from .currency_service import CurrencyService, convert
from .reconciliation_service import ReconciliationService
from .recurrence_service import RecurrenceService
from .transaction_service import TransactionService, infer_transaction_type

__all__ = [
    "AccountService",
    "BalanceService",
    "BudgetService",
    "CalibrationService",
    "CheckinService",
    "CurrencyService",
    "ReconciliationService",
    "RecurrenceService",
    "TransactionService",
    "aggregate",
    "build_tree",
    "classify_indicator",
    "convert",
    "infer_transaction_type",
]
