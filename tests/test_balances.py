from datetime import date

import pytest
from sqlalchemy import create_engine, event, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from balances import BalanceEngine
from database import Base
from engine import LedgerEngine
from errors import LedgerInconsistency, NotFound
from models import Account, Transaction
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _txn(day: date, description: str, debit: int = 0, credit: int = 0) -> TransactionIn:
    return TransactionIn(
        date=day,
        description=description,
        debit_cents=debit,
        credit_cents=credit,
        auto_categorize=False,
    )


def _balances(session, account_id: int) -> list[int]:
    return [
        t.balance_after_cents
        for t in TransactionService(session).list_for_account(account_id)
    ]


def test_running_balances_follow_date_order_not_insert_order() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="Current", opening_balance_cents=10_000)
    )
    txns = TransactionService(session)
    txns.create(account.id, _txn(date(2025, 1, 3), "RENT", debit=4_000))
    txns.create(account.id, _txn(date(2025, 1, 1), "SALARY", credit=2_500))
    txns.create(account.id, _txn(date(2025, 1, 2), "TESCO STORES", debit=1_200))

    ledger = txns.list_for_account(account.id)
    assert [t.description for t in ledger] == ["SALARY", "TESCO STORES", "RENT"]
    assert [t.balance_after_cents for t in ledger] == [12_500, 11_300, 7_300]

    session.refresh(account)
    assert account.current_balance_cents == 7_300
    assert BalanceEngine(session).verify(account.id)


def test_same_day_transactions_keep_insertion_order() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Current"))
    txns = TransactionService(session)
    first = txns.create(account.id, _txn(date(2025, 2, 1), "COFFEE", debit=300))
    second = txns.create(account.id, _txn(date(2025, 2, 1), "REFUND", credit=500))

    assert first.sequence < second.sequence
    ledger = txns.list_for_account(account.id)
    assert [t.id for t in ledger] == [first.id, second.id]
    assert [t.balance_after_cents for t in ledger] == [-300, 200]


def test_recompute_is_idempotent_and_issues_no_writes() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="Current", opening_balance_cents=1_000)
    )
    txns = TransactionService(session)
    txns.create(account.id, _txn(date(2025, 3, 1), "GYM", debit=2_999))
    txns.create(account.id, _txn(date(2025, 3, 5), "SALARY", credit=150_000))
    before = _balances(session, account.id)

    statements: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    sa_engine = session.get_bind()
    event.listen(sa_engine, "before_cursor_execute", _record)
    try:
        final = BalanceEngine(session).recompute(account.id)
        session.commit()
    finally:
        event.remove(sa_engine, "before_cursor_execute", _record)

    assert final == 1_000 - 2_999 + 150_000
    assert _balances(session, account.id) == before
    assert not [s for s in statements if s.lstrip().upper().startswith("UPDATE")]


def test_opening_balance_change_shifts_every_balance() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Savings", opening_balance_cents=0))
    txns = TransactionService(session)
    txns.create(account.id, _txn(date(2025, 4, 1), "INTEREST", credit=120))
    txns.create(account.id, _txn(date(2025, 4, 2), "WITHDRAWAL", debit=5_000))
    before = _balances(session, account.id)

    account = accounts.update_opening_balance(account.id, 20_000)

    assert _balances(session, account.id) == [b + 20_000 for b in before]
    assert account.current_balance_cents == before[-1] + 20_000


def test_editing_a_past_transaction_updates_later_balances() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Current"))
    txns = TransactionService(session)
    early = txns.create(account.id, _txn(date(2025, 5, 1), "SHOP", debit=1_000))
    txns.create(account.id, _txn(date(2025, 5, 9), "PAY", credit=3_000))

    txns.update(early.id, _txn(date(2025, 5, 1), "SHOP", debit=400))

    assert _balances(session, account.id) == [-400, 2_600]


def test_deleting_transaction_and_clearing_account() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Current", opening_balance_cents=500))
    txns = TransactionService(session)
    a = txns.create(account.id, _txn(date(2025, 6, 1), "A", debit=100))
    txns.create(account.id, _txn(date(2025, 6, 2), "B", debit=200))

    txns.delete(a.id)
    assert _balances(session, account.id) == [300]
    assert accounts.get(account.id).current_balance_cents == 300

    removed = accounts.clear_transactions(account.id)
    assert removed == 1
    assert _balances(session, account.id) == []
    assert accounts.get(account.id).current_balance_cents == 500


def test_failed_balance_write_rolls_back_the_triggering_change() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Current", opening_balance_cents=1_000))
    txns = TransactionService(session)
    for day, debit in ((1, 100), (2, 200), (3, 300)):
        txns.create(account.id, _txn(date(2025, 7, day), f"ITEM {day}", debit=debit))
    before = _balances(session, account.id)

    calls = {"count": 0}

    def _fail_second_update(mapper, connection, target):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("UPDATE transactions", {}, Exception("disk I/O error"))

    event.listen(Transaction, "before_update", _fail_second_update)
    try:
        with pytest.raises(LedgerInconsistency) as excinfo:
            accounts.update_opening_balance(account.id, 9_000)
    finally:
        event.remove(Transaction, "before_update", _fail_second_update)

    assert excinfo.value.account_id == account.id
    reloaded = accounts.get(account.id)
    assert reloaded.opening_balance_cents == 1_000
    assert reloaded.current_balance_cents == 400
    assert _balances(session, account.id) == before
    assert BalanceEngine(session).verify(account.id)


def test_verify_detects_tampering_and_recompute_repairs_it() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Current"))
    txn = TransactionService(session).create(
        account.id, _txn(date(2025, 8, 1), "BOOTS", debit=999)
    )
    session.execute(
        update(Transaction)
        .where(Transaction.id == txn.id)
        .values(balance_after_cents=12345)
    )
    session.commit()
    session.expire_all()

    balances = BalanceEngine(session)
    assert not balances.verify(account.id)

    LedgerEngine(session).recompute_balances(account.id)
    assert balances.verify(account.id)
    assert _balances(session, account.id) == [-999]


def test_unknown_or_foreign_account_is_not_found() -> None:
    session = make_session()
    other = Account(user_id=2, name="Not mine", opening_balance_cents=0)
    session.add(other)
    session.commit()

    with pytest.raises(NotFound):
        BalanceEngine(session).recompute(999)
    with pytest.raises(NotFound):
        LedgerEngine(session, user_id=1).recompute_balances(other.id)
