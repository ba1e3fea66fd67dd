from __future__ import annotations

import structlog
from sqlalchemy.orm import Session

from .core.database import SessionLocal
from .models import Account, AccountClass, AccountType

logger = structlog.get_logger(__name__)

OPENING_BALANCE_ACCOUNT_NAME = "Opening Balance"


def ensure_system_accounts(db: Session) -> Account:
    """Create the equity counter-account used by opening postings if it is missing."""
    account = (
        db.query(Account)
        .filter(Account.is_system.is_(True), Account.type == AccountType.EQUITY)
        .first()
    )
    if account is None:
        account = Account(
            name=OPENING_BALANCE_ACCOUNT_NAME,
            type=AccountType.EQUITY,
            account_class=AccountClass.NOMINAL,
            is_group=False,
            currency=None,
            is_system=True,
            sort_order=0,
        )
        db.add(account)
        db.flush()
        logger.info("system_account_created", account_id=account.id, name=account.name)
    return account


def seed() -> None:
    db: Session = SessionLocal()
    try:
        ensure_system_accounts(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
