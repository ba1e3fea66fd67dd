"""Domain errors raised by the ledger services.

They subclass ``HTTPException`` so routers can let them propagate unchanged;
services catch ``LedgerError`` where a batch must keep going.
"""

from fastapi import HTTPException, status


class LedgerError(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str = "Ledger error"):
        super().__init__(status_code=self.status_code, detail=detail)


class NotFoundError(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class IntegrityViolationError(LedgerError):
    """A posting or calibration would break a ledger rule."""

    status_code = 422


class DuplicateCalibrationError(LedgerError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, detail: str = "Balance equals the last calibration; wait for the balance to change"):
        super().__init__(detail)


class InvalidStateError(LedgerError):
    status_code = status.HTTP_409_CONFLICT
