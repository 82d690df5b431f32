"""
shared/errors.py
Domain exceptions. Every failure carries a stable `kind` that is logged and
counted; only CapacityExceeded / validation messages reach the client verbatim.
"""

GENERIC_BUSY_MESSAGE = "System busy, please retry."


class LedgerError(Exception):
    kind = "ledger_error"
    status_code = 503
    public = False           # if False, clients only see GENERIC_BUSY_MESSAGE

    def __init__(self, message: str = GENERIC_BUSY_MESSAGE):
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        return self.message if self.public else GENERIC_BUSY_MESSAGE


class CapacityExceeded(LedgerError):
    kind = "capacity_exceeded"
    status_code = 409
    public = True


class SubmissionInvalid(LedgerError):
    """Malformed submission, rejected before any storage interaction."""
    kind = "validation_error"
    status_code = 422
    public = True


class BookingNotFound(LedgerError):
    kind = "not_found"
    status_code = 404
    public = True


class StorageUnavailable(LedgerError):
    kind = "storage_unavailable"


class SystemBusy(LedgerError):
    """A lock could not be taken within its wait bound."""
    kind = "system_busy"


class ReconciliationBusy(LedgerError):
    """Another reconciliation run holds the run-wide lock."""
    kind = "reconciliation_busy"


class ReconciliationAborted(LedgerError):
    kind = "reconciliation_aborted"

    def __init__(self, message: str, state: str = ""):
        super().__init__(message)
        self.state = state


class LedgerSchemaError(Exception):
    """Stored header does not satisfy the column contract. Raised at startup."""
    pass
