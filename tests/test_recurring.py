from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from engine import LedgerEngine
from errors import NotFound
from models import Direction, Frequency, RecurringPattern, recurring_pattern_transactions
from recurring import extract_merchant_name, match_interval, normalize_description
from schemas import AccountIn, DetectionOptions, RecurringPatternUpdate, TransactionIn
from services import AccountService, RecurringPatternService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


NETFLIX_DATES = [date(2025, month, 15) for month in range(1, 7)]
TODAY = date(2025, 7, 1)


def _add(session, account_id: int, day: date, description: str, debit: int = 0, credit: int = 0):
    return TransactionService(session).create(
        account_id,
        TransactionIn(
            date=day,
            description=description,
            debit_cents=debit,
            credit_cents=credit,
            auto_categorize=False,
        ),
    )


def _ledger_with_netflix(session):
    account = AccountService(session).create(AccountIn(name="Current", opening_balance_cents=50_000))
    for day in NETFLIX_DATES:
        _add(session, account.id, day, "NETFLIX.COM", debit=999)
    for day, amount in ((date(2025, 1, 2), 2_000), (date(2025, 1, 5), 2_050), (date(2025, 2, 20), 1_990)):
        _add(session, account.id, day, "TESCO STORES 1234", debit=amount)
    return account


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("CARD PAYMENT TO TESCO STORES 1234 12/03/2025", "TESCO STORES"),
        ("AMZN*MKTPLACE REF 88812", "AMZN MKTPLACE"),
        ("spotify #4432", "SPOTIFY"),
        ("REFUND", "REFUND"),
        ("GYM 2", "GYM"),
        ("  netflix.com  ", "NETFLIX.COM"),
        ("15/01 PAYMENT TO NETFLIX", "NETFLIX"),
        ("12.03 CARD PAYMENT TO TESCO STORES", "TESCO STORES"),
    ],
)
def test_normalize_description(raw: str, expected: str) -> None:
    assert normalize_description(raw) == expected
    assert normalize_description(expected) == expected


def test_extract_merchant_name() -> None:
    assert extract_merchant_name("DIRECT DEBIT TO BRITISH GAS - ACC 1234") == "British Gas"
    assert extract_merchant_name("NETFLIX.COM") == "Netflix.com"


def test_match_interval() -> None:
    assert match_interval([7, 6, 8]) == Frequency.weekly
    assert match_interval([14, 12, 17]) == Frequency.fortnightly
    assert match_interval([31, 28, 31]) == Frequency.monthly
    assert match_interval([92, 89]) == Frequency.quarterly
    assert match_interval([365, 366]) == Frequency.yearly
    assert match_interval([14, 30]) is None
    assert match_interval([]) is None


def test_detects_monthly_subscription() -> None:
    session = make_session()
    _ledger_with_netflix(session)

    candidates = LedgerEngine(session).detect_recurring(DetectionOptions(today=TODAY))

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.description_pattern == "NETFLIX.COM"
    assert candidate.merchant_name == "Netflix.com"
    assert candidate.direction == Direction.debit
    assert candidate.frequency == Frequency.monthly
    assert candidate.typical_amount_cents == 999
    assert candidate.typical_day == 15
    assert candidate.occurrence_count == 6
    assert candidate.is_subscription is True
    assert candidate.last_seen == date(2025, 6, 15)
    assert candidate.next_expected == date(2025, 7, 15)
    assert len(candidate.transaction_ids) == 6


def test_too_few_occurrences_yield_nothing() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Current"))
    _add(session, account.id, date(2025, 1, 15), "NETFLIX.COM", debit=999)
    _add(session, account.id, date(2025, 2, 15), "NETFLIX.COM", debit=999)

    assert LedgerEngine(session).detect_recurring(DetectionOptions(today=TODAY)) == []


def test_lookback_window_limits_history() -> None:
    session = make_session()
    _ledger_with_netflix(session)

    options = DetectionOptions(today=TODAY, lookback_days=60)
    assert LedgerEngine(session).detect_recurring(options) == []

    options = DetectionOptions(today=TODAY, lookback_days=0)
    assert len(LedgerEngine(session).detect_recurring(options)) == 1


def test_amount_outliers_do_not_join_the_bucket() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Current"))
    for month in (1, 2, 3):
        _add(session, account.id, date(2025, month, 3), "PURE GYM", debit=2_999)
    _add(session, account.id, date(2025, 4, 3), "PURE GYM", debit=5_999)

    candidates = LedgerEngine(session).detect_recurring(DetectionOptions(today=TODAY))

    assert len(candidates) == 1
    assert candidates[0].typical_amount_cents == 2_999
    assert candidates[0].occurrence_count == 3
    assert candidates[0].is_subscription is False


def test_candidates_sorted_by_occurrences() -> None:
    session = make_session()
    account = _ledger_with_netflix(session)
    for day in (2, 9, 16, 23):
        _add(session, account.id, date(2025, 6, day), "POCKET MONEY", credit=500)

    candidates = LedgerEngine(session).detect_recurring(DetectionOptions(today=TODAY))

    assert [c.description_pattern for c in candidates] == ["NETFLIX.COM", "POCKET MONEY"]
    weekly = candidates[1]
    assert weekly.frequency == Frequency.weekly
    assert weekly.direction == Direction.credit
    assert weekly.typical_day is None
    assert weekly.next_expected == date(2025, 6, 30)


def test_confirm_tags_exactly_the_evidence() -> None:
    session = make_session()
    _ledger_with_netflix(session)
    engine = LedgerEngine(session)
    candidate = engine.detect_recurring(DetectionOptions(today=TODAY))[0]

    pattern = engine.confirm_candidate(candidate)

    assert pattern.id is not None
    assert pattern.frequency == Frequency.monthly
    assert pattern.last_seen == date(2025, 6, 15)
    tagged = RecurringPatternService(session).transactions(pattern.id)
    assert sorted(t.id for t in tagged) == sorted(candidate.transaction_ids)
    assert engine.detect_recurring(DetectionOptions(today=TODAY)) == []


def test_confirming_twice_persists_nothing() -> None:
    session = make_session()
    account = _ledger_with_netflix(session)
    engine = LedgerEngine(session)
    candidate = engine.detect_recurring(DetectionOptions(today=TODAY))[0]
    engine.confirm_candidate(candidate)

    with pytest.raises(ValueError):
        engine.confirm_candidate(candidate)

    extra = [
        _add(session, account.id, date(2025, month, 20), "NETFLIX.COM", debit=1_599).id
        for month in (7, 8, 9)
    ]
    duplicate = candidate.model_copy(update={"transaction_ids": extra})
    with pytest.raises(ValueError):
        engine.confirm_candidate(duplicate)

    assert session.scalar(select(func.count()).select_from(RecurringPattern)) == 1
    tagged_extra = session.scalar(
        select(func.count())
        .select_from(recurring_pattern_transactions)
        .where(recurring_pattern_transactions.c.transaction_id.in_(extra))
    )
    assert tagged_extra == 0
    assert engine.detect_recurring(DetectionOptions(today=date(2025, 10, 1))) == []


def test_confirm_rejects_unknown_transactions() -> None:
    session = make_session()
    _ledger_with_netflix(session)
    engine = LedgerEngine(session)
    candidate = engine.detect_recurring(DetectionOptions(today=TODAY))[0]
    broken = candidate.model_copy(
        update={"transaction_ids": candidate.transaction_ids + [9_999]}
    )

    with pytest.raises(ValueError):
        engine.confirm_candidate(broken)
    assert session.scalar(select(func.count()).select_from(RecurringPattern)) == 0


def test_new_transactions_are_auto_tagged() -> None:
    session = make_session()
    account = _ledger_with_netflix(session)
    engine = LedgerEngine(session)
    pattern = engine.confirm_candidate(
        engine.detect_recurring(DetectionOptions(today=TODAY))[0]
    )

    txn = _add(session, account.id, date(2025, 7, 15), "NETFLIX.COM", debit=1_010)
    other = _add(session, account.id, date(2025, 7, 16), "NETFLIX.COM", debit=4_000)

    patterns = RecurringPatternService(session)
    tagged_ids = {t.id for t in patterns.transactions(pattern.id)}
    assert txn.id in tagged_ids
    assert other.id not in tagged_ids
    assert patterns.get(pattern.id).last_seen == date(2025, 7, 15)


def test_pattern_update_delete_and_grouping() -> None:
    session = make_session()
    account = _ledger_with_netflix(session)
    for day in (2, 9, 16, 23):
        _add(session, account.id, date(2025, 6, day), "POCKET MONEY", credit=500)
    engine = LedgerEngine(session)
    for candidate in engine.detect_recurring(DetectionOptions(today=TODAY)):
        engine.confirm_candidate(candidate)

    service = RecurringPatternService(session)
    groups = service.regular_payments()
    assert [p.description_pattern for p in groups["monthly"]] == ["NETFLIX.COM"]
    assert [p.description_pattern for p in groups["weekly"]] == ["POCKET MONEY"]
    assert groups["annual"] == []

    netflix = groups["monthly"][0]
    service.update(netflix.id, RecurringPatternUpdate(typical_amount_cents=1_099, is_active=False))
    assert service.get(netflix.id).typical_amount_cents == 1_099
    assert service.regular_payments()["monthly"] == []

    service.delete(netflix.id)
    assert [p.description_pattern for p in service.list_all()] == ["POCKET MONEY"]
    remaining = session.scalar(select(func.count()).select_from(recurring_pattern_transactions))
    assert remaining == 4


def test_user_without_accounts_is_not_found() -> None:
    session = make_session()
    with pytest.raises(NotFound):
        LedgerEngine(session).detect_recurring()


def test_leading_date_descriptions_stay_tagged_after_confirm() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Current"))
    for month in range(1, 7):
        _add(session, account.id, date(2025, month, 15), f"15/{month:02d} PAYMENT TO NETFLIX", debit=999)
    engine = LedgerEngine(session)

    candidate = engine.detect_recurring(DetectionOptions(today=TODAY))[0]
    assert candidate.description_pattern == "NETFLIX"
    assert candidate.merchant_name == "Netflix"

    pattern = engine.confirm_candidate(candidate)
    assert pattern.description_pattern == candidate.description_pattern

    july = _add(session, account.id, date(2025, 7, 15), "15/07 PAYMENT TO NETFLIX", debit=999)
    tagged = {t.id for t in RecurringPatternService(session).transactions(pattern.id)}
    assert july.id in tagged
    assert len(tagged) == 7


def test_irregular_gaps_are_not_recurring() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Current"))
    for day in (date(2025, 1, 1), date(2025, 1, 15), date(2025, 2, 14), date(2025, 5, 20)):
        _add(session, account.id, day, "CAFE NERO", debit=450)

    assert LedgerEngine(session).detect_recurring(DetectionOptions(today=TODAY)) == []


def test_tag_and_untag_single_transactions() -> None:
    session = make_session()
    account = _ledger_with_netflix(session)
    engine = LedgerEngine(session)
    pattern = engine.confirm_candidate(
        engine.detect_recurring(DetectionOptions(today=TODAY))[0]
    )
    stray = _add(session, account.id, date(2025, 7, 20), "NETFLIX INTERNATIONAL", debit=999)

    service = RecurringPatternService(session)
    assert stray.id not in {t.id for t in service.transactions(pattern.id)}

    assert service.tag(pattern.id, [stray.id]) == 1
    assert stray.id in {t.id for t in service.transactions(pattern.id)}
    assert service.get(pattern.id).last_seen == date(2025, 7, 20)

    service.untag(stray.id)
    remaining = [t.id for t in service.transactions(pattern.id)]
    assert stray.id not in remaining
    assert len(remaining) == 6

    with pytest.raises(ValueError):
        service.tag(pattern.id, [])
    with pytest.raises(ValueError):
        service.tag(pattern.id, [stray.id, 9_999])
    with pytest.raises(NotFound):
        service.tag(9_999, [stray.id])
    with pytest.raises(NotFound):
        service.untag(9_999)
    assert stray.id not in {t.id for t in service.transactions(pattern.id)}
