import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import LedgerInconsistency, NotFound
from models import Account, Transaction


logger = logging.getLogger(__name__)


def ledger_order():
    """Replay order for an account's ledger: date, then insertion sequence, then id."""
    return (Transaction.date.asc(), Transaction.sequence.asc(), Transaction.id.asc())


class BalanceEngine:
    """Recalculates running balances for one account at a time.

    The engine never commits. It works inside whatever unit of work the
    caller has open on ``session`` so that a mutation and the recompute it
    triggers land (or fail) together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _lock_account(self, account_id: int) -> Account:
        stmt = (
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = self.session.scalar(stmt)
        if not account:
            raise NotFound("Account not found")
        return account

    def _ledger(self, account_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(*ledger_order())
        )
        return list(self.session.scalars(stmt).all())

    def recompute(self, account_id: int) -> int:
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"recompute_failed: account_id={account_id} stage=flush")
            raise LedgerInconsistency(account_id, "pending changes could not be written") from exc

        account = self._lock_account(account_id)
        transactions = self._ledger(account_id)

        running = account.opening_balance_cents or 0
        for txn in transactions:
            running = running + (txn.credit_cents or 0) - (txn.debit_cents or 0)
            if txn.balance_after_cents != running:
                txn.balance_after_cents = running
        if account.current_balance_cents != running:
            account.current_balance_cents = running

        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"recompute_failed: account_id={account_id} stage=write")
            raise LedgerInconsistency(account_id, "balance write failed") from exc

        logger.info(
            f"recompute: account_id={account_id} "
            f"transactions={len(transactions)} balance={running}"
        )
        return running

    def verify(self, account_id: int) -> bool:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFound("Account not found")

        expected = account.opening_balance_cents or 0
        for txn in self._ledger(account_id):
            expected = expected + (txn.credit_cents or 0) - (txn.debit_cents or 0)
            if txn.balance_after_cents != expected:
                return False
        return account.current_balance_cents == expected
