"""Router aggregation: every feature router is mounted under ``/api``."""

from fastapi import FastAPI

from . import accounts, budgets, calibrations, checkin, currency, periodic, reconciliation, transactions


def register_routers(app: FastAPI) -> None:
    """Attach all API routes to the FastAPI application."""

    app.include_router(accounts.router, prefix="/api")
    app.include_router(transactions.router, prefix="/api")
    app.include_router(calibrations.router, prefix="/api")
    app.include_router(currency.router, prefix="/api")
    app.include_router(budgets.router, prefix="/api")
    app.include_router(periodic.router, prefix="/api")
    app.include_router(reconciliation.router, prefix="/api")
    app.include_router(checkin.router, prefix="/api")
