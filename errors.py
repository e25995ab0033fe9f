class LedgerError(Exception):
    pass


class LedgerInconsistency(LedgerError):
    """A balance recompute could not be written atomically.

    The session transaction that triggered the recompute has already been
    rolled back when this is raised; callers must not retry blindly.
    """

    def __init__(self, account_id: int, message: str) -> None:
        super().__init__(f"Ledger for account {account_id} is inconsistent: {message}")
        self.account_id = account_id


class PatternValidationError(LedgerError, ValueError):
    pass


class NotFound(LedgerError, ValueError):
    pass
