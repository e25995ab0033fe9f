from __future__ import annotations

import logging
import random
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from balances import BalanceEngine, ledger_order
from categorization import (
    CategoryMatcher,
    RuleMatch,
    compile_pattern,
    extract_pattern,
    translate_pattern,
)
from config import get_settings
from csv_utils import export_transactions, parse_statement_csv
from errors import NotFound
from models import (
    Account,
    Anomaly,
    Category,
    CategoryRule,
    CategoryType,
    Frequency,
    RecurringPattern,
    Transaction,
    recurring_pattern_transactions,
)
from recurrence import add_months, days_in_month, local_today
from recurring import normalize_description
from schemas import (
    AccountIn,
    CategoryIn,
    CategoryRuleIn,
    ImportRowIn,
    RecurringCandidate,
    RecurringPatternUpdate,
    SampleDataOptions,
    TransactionIn,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def _purge_transactions(session: Session, transaction_ids: Iterable[int]) -> int:
    """Delete transactions and everything that points at them.

    Surviving transfer legs lose their back-reference and transfer flag.
    Bulk statements bypass the identity map, so the session is expired
    afterwards.
    """
    ids = list(transaction_ids)
    if not ids:
        return 0

    session.flush()
    bulk = {"synchronize_session": False}
    session.execute(
        delete(Anomaly).where(Anomaly.transaction_id.in_(ids)), execution_options=bulk
    )
    session.execute(
        delete(recurring_pattern_transactions).where(
            recurring_pattern_transactions.c.transaction_id.in_(ids)
        )
    )
    session.execute(
        update(Transaction)
        .where(
            Transaction.linked_transaction_id.in_(ids),
            Transaction.id.not_in(ids),
        )
        .values(linked_transaction_id=None, is_transfer=False),
        execution_options=bulk,
    )
    session.execute(
        update(Transaction)
        .where(Transaction.id.in_(ids))
        .values(linked_transaction_id=None),
        execution_options=bulk,
    )
    session.execute(
        delete(Transaction).where(Transaction.id.in_(ids)), execution_options=bulk
    )
    session.expire_all()
    return len(ids)


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name.asc(), Account.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int, *, for_update: bool = False) -> Account:
        stmt = select(Account).where(
            Account.id == account_id, Account.user_id == self.user_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        account = self.session.scalar(stmt)
        if not account:
            raise NotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise ValueError("Account name cannot be empty")

        account_number = (data.account_number or "").strip() or None
        if account_number:
            stmt = select(Account.id).where(
                Account.user_id == self.user_id,
                Account.account_number == account_number,
            )
            if self.session.scalar(stmt):
                raise ValueError("Account with this number already exists")

        account = Account(
            user_id=self.user_id,
            name=name,
            account_number=account_number,
            type=data.type,
            opening_balance_cents=data.opening_balance_cents,
            current_balance_cents=data.opening_balance_cents,
            next_sequence=1,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(f"account_created: account_id={account.id} user_id={self.user_id}")
        return account

    def rename(self, account_id: int, name: str) -> Account:
        account = self.get(account_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Account name cannot be empty")
        account.name = clean_name
        self.session.commit()
        self.session.refresh(account)
        return account

    def update_opening_balance(self, account_id: int, opening_balance_cents: int) -> Account:
        account = self.get(account_id, for_update=True)
        account.opening_balance_cents = opening_balance_cents
        BalanceEngine(self.session).recompute(account.id)
        self.session.commit()
        self.session.refresh(account)
        return account

    def _transaction_ids(self, account_id: int) -> list[int]:
        stmt = select(Transaction.id).where(Transaction.account_id == account_id)
        return list(self.session.scalars(stmt).all())

    def clear_transactions(self, account_id: int) -> int:
        account = self.get(account_id, for_update=True)
        removed = _purge_transactions(self.session, self._transaction_ids(account.id))
        BalanceEngine(self.session).recompute(account_id)
        self.session.commit()
        logger.info(f"account_cleared: account_id={account_id} removed={removed}")
        return removed

    def delete(self, account_id: int) -> None:
        account = self.get(account_id, for_update=True)
        removed = _purge_transactions(self.session, self._transaction_ids(account.id))
        self.session.execute(
            delete(Account).where(Account.id == account_id),
            execution_options={"synchronize_session": False},
        )
        self.session.expunge(account)
        self.session.commit()
        logger.info(f"account_deleted: account_id={account_id} removed={removed}")

    def summary(self, account_id: int, month: Optional[date] = None) -> dict[str, int]:
        """Income, expenses and net for an account, transfers excluded.

        When ``month`` is given only that calendar month is counted; the
        balance is always the account's current balance.
        """
        account = self.get(account_id)
        stmt = select(
            func.coalesce(func.sum(Transaction.credit_cents), 0),
            func.coalesce(func.sum(Transaction.debit_cents), 0),
            func.count(Transaction.id),
        ).where(
            Transaction.account_id == account.id,
            Transaction.is_transfer.is_(False),
        )
        if month is not None:
            start = date(month.year, month.month, 1)
            stmt = stmt.where(
                Transaction.date >= start, Transaction.date < add_months(start, 1)
            )
        income, expenses, count = self.session.execute(stmt).one()
        return {
            "income_cents": int(income),
            "expenses_cents": int(expenses),
            "net_cents": int(income) - int(expenses),
            "balance_cents": account.current_balance_cents,
            "transaction_count": int(count),
        }


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _require_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def _resolve_category_id(
        self, data: TransactionIn, matcher: CategoryMatcher
    ) -> Optional[int]:
        if data.category_id is not None:
            return self._require_category(data.category_id).id
        if not data.auto_categorize:
            return None
        match = matcher.classify(data.description)
        return match.category_id if match else None

    def insert_unflushed(
        self,
        account: Account,
        data: TransactionIn,
        matcher: CategoryMatcher,
        tagger: RecurringPatternService,
    ) -> Transaction:
        """Add one transaction to the session without flushing or recomputing.

        Bulk callers insert many rows this way and then recompute the account
        once. The account must already be locked by the caller.
        """
        txn = Transaction(
            account_id=account.id,
            date=data.date,
            sequence=account.next_sequence,
            description=data.description.strip(),
            debit_cents=data.debit_cents,
            credit_cents=data.credit_cents,
            category_id=self._resolve_category_id(data, matcher),
            notes=data.notes,
            is_transfer=False,
        )
        account.next_sequence = account.next_sequence + 1
        self.session.add(txn)
        tagger.tag_transaction(txn)
        return txn

    def create(self, account_id: int, data: TransactionIn) -> Transaction:
        account = AccountService(self.session, self.user_id).get(
            account_id, for_update=True
        )
        txn = self.insert_unflushed(
            account,
            data,
            CategoryMatcher(self.session, self.user_id),
            RecurringPatternService(self.session, self.user_id),
        )
        BalanceEngine(self.session).recompute(account.id)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: transaction_id={txn.id} account_id={account.id} "
            f"category_id={txn.category_id}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.id == transaction_id,
                Account.user_id == self.user_id,
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list_for_account(
        self, account_id: int, limit: Optional[int] = None
    ) -> list[Transaction]:
        account = AccountService(self.session, self.user_id).get(account_id)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.account_id == account.id)
            .order_by(*ledger_order())
        )
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def list_uncategorized(self, limit: int = 50) -> list[Transaction]:
        """Newest uncategorised non-transfer transactions across the user's accounts."""
        stmt = (
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .where(
                Account.user_id == self.user_id,
                Transaction.category_id.is_(None),
                Transaction.is_transfer.is_(False),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        category_id = self._resolve_category_id(
            data, CategoryMatcher(self.session, self.user_id)
        )

        txn.date = data.date
        txn.description = data.description.strip()
        txn.debit_cents = data.debit_cents
        txn.credit_cents = data.credit_cents
        txn.category_id = category_id
        txn.notes = data.notes

        BalanceEngine(self.session).recompute(txn.account_id)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        account_id = txn.account_id
        linked_account_id: Optional[int] = None
        if txn.linked_transaction_id:
            linked = self.session.get(Transaction, txn.linked_transaction_id)
            if linked:
                linked_account_id = linked.account_id

        _purge_transactions(self.session, [txn.id])
        engine = BalanceEngine(self.session)
        engine.recompute(account_id)
        if linked_account_id and linked_account_id != account_id:
            engine.recompute(linked_account_id)
        self.session.commit()
        logger.info(
            f"transaction_deleted: transaction_id={transaction_id} account_id={account_id}"
        )

    def set_category(self, transaction_id: int, category_id: Optional[int]) -> Transaction:
        txn = self.get(transaction_id)
        if category_id is not None:
            self._require_category(category_id)
        txn.category_id = category_id
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def export_csv(self, account_id: int) -> str:
        return export_transactions(self.list_for_account(account_id))


class TransferService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def detect(self, window_days: int = 3) -> list[tuple[Transaction, Transaction]]:
        """Propose unlinked (debit, credit) pairs that look like transfers.

        A pair moves the same amount between two different accounts of the
        user within ``window_days``. Each leg is used at most once and the
        closest date wins.
        """
        stmt = (
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .where(
                Account.user_id == self.user_id,
                Transaction.is_transfer.is_(False),
                Transaction.linked_transaction_id.is_(None),
            )
            .order_by(*ledger_order())
        )
        candidates = self.session.scalars(stmt).all()
        debits = [t for t in candidates if t.debit_cents > 0 and t.credit_cents == 0]
        credits = [t for t in candidates if t.credit_cents > 0 and t.debit_cents == 0]

        used: set[int] = set()
        pairs: list[tuple[Transaction, Transaction]] = []
        for debit in debits:
            best: Optional[tuple[int, Transaction]] = None
            for credit in credits:
                if credit.id in used or credit.account_id == debit.account_id:
                    continue
                if credit.credit_cents != debit.debit_cents:
                    continue
                gap = abs((credit.date - debit.date).days)
                if gap > window_days:
                    continue
                if best is None or gap < best[0]:
                    best = (gap, credit)
            if best:
                used.add(best[1].id)
                pairs.append((debit, best[1]))
        return pairs

    def link(self, debit_transaction_id: int, credit_transaction_id: int) -> None:
        txn_service = TransactionService(self.session, self.user_id)
        debit = txn_service.get(debit_transaction_id)
        credit = txn_service.get(credit_transaction_id)

        if debit.account_id == credit.account_id:
            raise ValueError("Transfer legs must be in different accounts")
        if debit.debit_cents <= 0 or credit.credit_cents <= 0:
            raise ValueError("Transfer needs one debit and one credit leg")
        if debit.debit_cents != credit.credit_cents:
            raise ValueError("Transfer legs must have the same amount")
        if debit.linked_transaction_id or credit.linked_transaction_id:
            raise ValueError("Transaction is already linked")

        debit.is_transfer = True
        credit.is_transfer = True
        debit.linked_transaction_id = credit.id
        credit.linked_transaction_id = debit.id
        self.session.commit()
        logger.info(f"transfer_linked: debit_id={debit.id} credit_id={credit.id}")

    def unlink(self, transaction_id: int) -> None:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        if not txn.is_transfer and not txn.linked_transaction_id:
            raise ValueError("Transaction is not a transfer")

        if txn.linked_transaction_id:
            other = self.session.get(Transaction, txn.linked_transaction_id)
            if other:
                other.is_transfer = False
                other.linked_transaction_id = None
        txn.is_transfer = False
        txn.linked_transaction_id = None
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")

        stmt = select(Category).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if self.session.scalar(stmt):
            raise ValueError("Category with this name already exists")

        category = Category(user_id=self.user_id, name=name, type=data.type)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.flush()
        bulk = {"synchronize_session": False}
        self.session.execute(
            update(Transaction)
            .where(Transaction.category_id == category.id)
            .values(category_id=None),
            execution_options=bulk,
        )
        self.session.execute(
            update(RecurringPattern)
            .where(RecurringPattern.category_id == category.id)
            .values(category_id=None),
            execution_options=bulk,
        )
        self.session.execute(
            delete(CategoryRule).where(CategoryRule.category_id == category.id),
            execution_options=bulk,
        )
        self.session.execute(
            delete(Category).where(Category.id == category.id), execution_options=bulk
        )
        self.session.expire_all()
        self.session.commit()


class CategoryRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[CategoryRule]:
        stmt = (
            select(CategoryRule)
            .options(joinedload(CategoryRule.category))
            .where(CategoryRule.user_id == self.user_id)
            .order_by(CategoryRule.priority.asc(), CategoryRule.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> CategoryRule:
        rule = self.session.get(CategoryRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise NotFound("Rule not found")
        return rule

    def _require_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryRuleIn) -> CategoryRule:
        self._require_category(data.category_id)
        pattern = data.pattern.strip()
        rule = CategoryRule(
            user_id=self.user_id,
            pattern=pattern,
            compiled_pattern=translate_pattern(pattern),
            category_id=data.category_id,
            priority=data.priority,
            is_active=data.is_active,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        logger.info(
            f"rule_created: rule_id={rule.id} priority={rule.priority} "
            f"category_id={rule.category_id}"
        )
        return rule

    def update(self, rule_id: int, data: CategoryRuleIn) -> CategoryRule:
        rule = self.get(rule_id)
        self._require_category(data.category_id)
        pattern = data.pattern.strip()
        compiled = translate_pattern(pattern)

        rule.pattern = pattern
        rule.compiled_pattern = compiled
        rule.category_id = data.category_id
        rule.priority = data.priority
        rule.is_active = data.is_active
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def toggle(self, rule_id: int, is_active: bool) -> None:
        rule = self.get(rule_id)
        rule.is_active = is_active
        self.session.commit()

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()

    def test_description(self, description: str) -> Optional[RuleMatch]:
        return CategoryMatcher(self.session, self.user_id).classify(description)

    def test_pattern(self, pattern: str, description: str) -> bool:
        return compile_pattern(pattern).match((description or "").strip()) is not None

    def learn(self, description: str, category_id: int) -> Optional[CategoryRule]:
        """Create (or repoint) a ``%WORD%`` rule from a manually categorised description."""
        pattern = extract_pattern(description)
        if not pattern:
            return None
        category = self._require_category(category_id)

        stmt = select(CategoryRule).where(
            CategoryRule.user_id == self.user_id,
            func.lower(CategoryRule.pattern) == pattern.lower(),
        )
        existing = self.session.scalar(stmt)
        if existing:
            existing.category_id = category.id
            existing.is_active = True
            self.session.commit()
            self.session.refresh(existing)
            return existing

        # longer keywords are more specific
        word = pattern.strip("%")
        priority = 100 - min(len(word) * 2, 20)
        return self.create(
            CategoryRuleIn(pattern=pattern, category_id=category.id, priority=priority)
        )

    def apply_to_uncategorized(self, account_id: Optional[int] = None) -> int:
        stmt = (
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .where(
                Account.user_id == self.user_id,
                Transaction.category_id.is_(None),
                Transaction.is_transfer.is_(False),
            )
            .order_by(*ledger_order())
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)

        matcher = CategoryMatcher(self.session, self.user_id)
        updated = 0
        for txn in self.session.scalars(stmt).all():
            match = matcher.classify(txn.description)
            if match:
                txn.category_id = match.category_id
                updated += 1
        self.session.commit()
        logger.info(f"rules_applied: user_id={self.user_id} updated={updated}")
        return updated


REGULAR_PAYMENT_GROUPS = {
    "weekly": (Frequency.weekly, Frequency.fortnightly),
    "monthly": (Frequency.monthly, Frequency.quarterly),
    "annual": (Frequency.yearly,),
}


class RecurringPatternService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, *, active_only: bool = False) -> list[RecurringPattern]:
        stmt = (
            select(RecurringPattern)
            .options(joinedload(RecurringPattern.category))
            .where(RecurringPattern.user_id == self.user_id)
            .order_by(RecurringPattern.description_pattern.asc(), RecurringPattern.id.asc())
        )
        if active_only:
            stmt = stmt.where(RecurringPattern.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, pattern_id: int) -> RecurringPattern:
        pattern = self.session.get(RecurringPattern, pattern_id)
        if not pattern or pattern.user_id != self.user_id:
            raise NotFound("Recurring pattern not found")
        return pattern

    def transactions(self, pattern_id: int) -> list[Transaction]:
        pattern = self.get(pattern_id)
        stmt = (
            select(Transaction)
            .join(
                recurring_pattern_transactions,
                recurring_pattern_transactions.c.transaction_id == Transaction.id,
            )
            .where(recurring_pattern_transactions.c.pattern_id == pattern.id)
            .order_by(*ledger_order())
        )
        return self.session.scalars(stmt).all()

    def _covering_pattern(self, description_pattern: str, merchant_name: Optional[str]) -> Optional[int]:
        conditions = [RecurringPattern.description_pattern == description_pattern]
        merchant = (merchant_name or "").strip().lower()
        if merchant:
            conditions.append(func.lower(RecurringPattern.merchant_name) == merchant)
        stmt = (
            select(RecurringPattern.id)
            .where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.is_active.is_(True),
                or_(*conditions),
            )
            .limit(1)
        )
        return self.session.scalar(stmt)

    def confirm(self, candidate: RecurringCandidate) -> RecurringPattern:
        ids = list(dict.fromkeys(candidate.transaction_ids))
        if not ids:
            raise ValueError("Candidate has no transactions")

        stmt = (
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .where(Account.user_id == self.user_id, Transaction.id.in_(ids))
            .order_by(*ledger_order())
        )
        transactions = self.session.scalars(stmt).all()
        if len(transactions) != len(ids):
            raise ValueError("Candidate references unknown transactions")

        tagged = self.session.scalar(
            select(func.count())
            .select_from(recurring_pattern_transactions)
            .where(recurring_pattern_transactions.c.transaction_id.in_(ids))
        )
        if tagged:
            raise ValueError("Transactions already belong to a recurring pattern")

        description_pattern = (
            normalize_description(candidate.description_pattern)
            or candidate.description_pattern.strip().upper()
        )
        existing_id = self._covering_pattern(description_pattern, candidate.merchant_name)
        if existing_id:
            logger.warning(
                f"confirm_rejected: user_id={self.user_id} pattern_id={existing_id} "
                f"description={description_pattern!r}"
            )
            raise ValueError("Recurring pattern already exists")

        if candidate.category_id is not None:
            category = self.session.get(Category, candidate.category_id)
            if not category or category.user_id != self.user_id:
                raise ValueError("Category not found")

        pattern = RecurringPattern(
            user_id=self.user_id,
            description_pattern=description_pattern,
            merchant_name=candidate.merchant_name.strip() or None,
            direction=candidate.direction,
            typical_amount_cents=candidate.typical_amount_cents,
            typical_day=candidate.typical_day,
            frequency=candidate.frequency,
            is_subscription=candidate.is_subscription,
            category_id=candidate.category_id,
            last_seen=max(t.date for t in transactions),
            is_active=True,
        )
        pattern.transactions = list(transactions)
        self.session.add(pattern)
        self.session.commit()
        self.session.refresh(pattern)
        logger.info(
            f"pattern_confirmed: pattern_id={pattern.id} user_id={self.user_id} "
            f"frequency={pattern.frequency.value} transactions={len(ids)}"
        )
        return pattern

    def update(self, pattern_id: int, data: RecurringPatternUpdate) -> RecurringPattern:
        pattern = self.get(pattern_id)
        changes = data.model_dump(exclude_unset=True)
        category_id = changes.get("category_id")
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.user_id != self.user_id:
                raise ValueError("Category not found")
        for field, value in changes.items():
            setattr(pattern, field, value)
        self.session.commit()
        self.session.refresh(pattern)
        return pattern

    def delete(self, pattern_id: int) -> None:
        pattern = self.get(pattern_id)
        self.session.delete(pattern)
        self.session.commit()

    def tag(self, pattern_id: int, transaction_ids: Iterable[int]) -> int:
        """Attach transactions to a pattern, moving them off any other pattern.

        ``last_seen`` becomes the latest date among the pattern's transactions.
        """
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            raise ValueError("Transaction IDs are required")
        pattern = self.get(pattern_id)

        owned = self.session.scalars(
            select(Transaction.id)
            .join(Account, Account.id == Transaction.account_id)
            .where(Account.user_id == self.user_id, Transaction.id.in_(ids))
        ).all()
        if len(owned) != len(ids):
            raise ValueError("One or more transactions not found")

        self.session.flush()
        self.session.execute(
            delete(recurring_pattern_transactions).where(
                recurring_pattern_transactions.c.transaction_id.in_(ids)
            )
        )
        self.session.execute(
            insert(recurring_pattern_transactions),
            [{"pattern_id": pattern.id, "transaction_id": txn_id} for txn_id in ids],
        )
        self.session.expire_all()

        pattern.last_seen = self.session.scalar(
            select(func.max(Transaction.date))
            .join(
                recurring_pattern_transactions,
                recurring_pattern_transactions.c.transaction_id == Transaction.id,
            )
            .where(recurring_pattern_transactions.c.pattern_id == pattern.id)
        )
        self.session.commit()
        logger.info(
            f"pattern_tagged: pattern_id={pattern.id} transactions={len(ids)}"
        )
        return len(ids)

    def untag(self, transaction_id: int) -> Transaction:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        self.session.flush()
        self.session.execute(
            delete(recurring_pattern_transactions).where(
                recurring_pattern_transactions.c.transaction_id == txn.id
            )
        )
        self.session.expire_all()
        self.session.commit()
        return txn

    def tag_transaction(self, txn: Transaction) -> Optional[RecurringPattern]:
        """Attach a new transaction to the active pattern it continues, if any.

        Does not commit; the caller's unit of work owns that.
        """
        if txn.is_transfer or txn.amount_cents <= 0:
            return None
        key = normalize_description(txn.description)
        if not key:
            return None

        stmt = (
            select(RecurringPattern)
            .where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.is_active.is_(True),
                RecurringPattern.description_pattern == key,
                RecurringPattern.direction == txn.direction,
            )
            .order_by(RecurringPattern.id.asc())
        )
        tolerance = get_settings().recurring_amount_tolerance
        for pattern in self.session.scalars(stmt).all():
            allowed = pattern.typical_amount_cents * tolerance
            if abs(txn.amount_cents - pattern.typical_amount_cents) > allowed:
                continue
            pattern.transactions.append(txn)
            if pattern.last_seen is None or txn.date > pattern.last_seen:
                pattern.last_seen = txn.date
            return pattern
        return None

    def regular_payments(self) -> dict[str, list[RecurringPattern]]:
        patterns = self.list_all(active_only=True)
        grouped: dict[str, list[RecurringPattern]] = {}
        for label, frequencies in REGULAR_PAYMENT_GROUPS.items():
            grouped[label] = [p for p in patterns if p.frequency in frequencies]
        return grouped


class ImportCategoryAmbiguous(ValueError):
    pass


class ImportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _resolve_category(self, name: str, category_type: CategoryType) -> int:
        input_lower = name.lower()
        exact = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == input_lower,
            )
        )
        if exact:
            return exact.id

        categories = self.session.scalars(
            select(Category).where(Category.user_id == self.user_id)
        ).all()
        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            name_lower = (category.name or "").strip().lower()
            dist = int(Levenshtein.distance(input_lower, name_lower))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        max_distance = get_settings().import_fuzzy_max_distance
        if best_distance is not None and best_distance <= max_distance:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise ImportCategoryAmbiguous(
                    f"Category '{name}' is ambiguous; matches: {options}"
                )
            return best[0].id

        created = Category(user_id=self.user_id, name=name, type=category_type)
        self.session.add(created)
        self.session.flush()
        return created.id

    def import_rows(self, account_id: int, rows: Iterable[ImportRowIn]) -> int:
        rows = list(rows)
        account = AccountService(self.session, self.user_id).get(
            account_id, for_update=True
        )

        resolved: dict[str, int] = {}
        try:
            for row in rows:
                name = (row.category or "").strip()
                if name and name.lower() not in resolved:
                    category_type = (
                        CategoryType.income if row.credit_cents > 0 else CategoryType.expense
                    )
                    resolved[name.lower()] = self._resolve_category(name, category_type)
        except ValueError:
            self.session.rollback()
            raise

        txn_service = TransactionService(self.session, self.user_id)
        matcher = CategoryMatcher(self.session, self.user_id)
        tagger = RecurringPatternService(self.session, self.user_id)
        categorized = 0
        for row in rows:
            name = (row.category or "").strip()
            txn = txn_service.insert_unflushed(
                account,
                TransactionIn(
                    date=row.date,
                    description=row.description,
                    debit_cents=row.debit_cents,
                    credit_cents=row.credit_cents,
                    category_id=resolved.get(name.lower()) if name else None,
                    notes=row.notes,
                ),
                matcher,
                tagger,
            )
            if txn.category_id is not None:
                categorized += 1

        BalanceEngine(self.session).recompute(account.id)
        self.session.commit()
        logger.info(
            f"import: account_id={account.id} rows={len(rows)} categorized={categorized}"
        )
        return len(rows)

    def import_csv(self, account_id: int, content: str) -> int:
        rows, errors = parse_statement_csv(content)
        if errors:
            raise ValueError("; ".join(errors))
        return self.import_rows(account_id, rows)


# (description, minimum, maximum) in whole currency units
INCOME_TEMPLATES = [
    ("SALARY PAYMENT", 2000, 5000),
    ("FREELANCE WORK", 200, 1500),
    ("DIVIDEND PAYMENT", 50, 500),
    ("REFUND", 10, 200),
    ("BANK INTEREST", 1, 50),
]

BILL_TEMPLATES = [
    ("BRITISH GAS", 50, 150),
    ("VIRGIN MEDIA", 30, 80),
    ("COUNCIL TAX", 100, 200),
    ("WATER BILL", 20, 60),
    ("ELECTRICITY", 40, 120),
    ("MOBILE PHONE", 15, 50),
    ("CAR INSURANCE", 30, 80),
    ("HOME INSURANCE", 20, 60),
    ("NETFLIX", 8, 16),
    ("SPOTIFY", 10, 15),
    ("GYM MEMBERSHIP", 20, 50),
]

SHOPPING_TEMPLATES = [
    ("TESCO STORES", 20, 150),
    ("SAINSBURYS", 15, 120),
    ("ASDA", 25, 100),
    ("AMAZON UK", 10, 200),
    ("PRIMARK", 15, 80),
    ("BOOTS", 5, 50),
    ("JOHN LEWIS", 20, 300),
    ("NEXT RETAIL", 20, 150),
    ("ARGOS", 15, 100),
    ("WILKO", 5, 40),
]

DINING_TEMPLATES = [
    ("COSTA COFFEE", 3, 8),
    ("STARBUCKS", 4, 10),
    ("MCDONALDS", 5, 15),
    ("NANDOS", 15, 40),
    ("PIZZA EXPRESS", 20, 50),
    ("DELIVEROO", 15, 40),
    ("UBER EATS", 12, 35),
    ("GREGGS", 3, 10),
    ("WETHERSPOONS", 10, 30),
    ("PRET A MANGER", 5, 15),
]


class SampleDataService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def _draw(
        rng: random.Random,
        month_start: date,
        template: tuple[str, int, int],
        categories: list[Category],
        *,
        is_income: bool,
        last_day: int,
    ) -> TransactionIn:
        description, low, high = template
        day = rng.randint(1, last_day)
        amount_cents = rng.randint(low * 100, high * 100)
        category = rng.choice(categories) if categories else None
        return TransactionIn(
            date=month_start.replace(day=day),
            description=description,
            debit_cents=0 if is_income else amount_cents,
            credit_cents=amount_cents if is_income else 0,
            category_id=category.id if category else None,
        )

    def generate(self, account_id: int, options: Optional[SampleDataOptions] = None) -> int:
        options = options or SampleDataOptions()
        expense_templates: list[tuple[str, int, int]] = []
        if options.include_bills:
            expense_templates.extend(BILL_TEMPLATES)
        if options.include_shopping:
            expense_templates.extend(SHOPPING_TEMPLATES)
        if options.include_dining:
            expense_templates.extend(DINING_TEMPLATES)
        if not options.include_income and not expense_templates:
            raise ValueError("At least one transaction type must be selected")

        account = AccountService(self.session, self.user_id).get(
            account_id, for_update=True
        )
        categories = CategoryService(self.session, self.user_id).list_all()
        income_categories = [c for c in categories if c.type == CategoryType.income]
        expense_categories = [c for c in categories if c.type == CategoryType.expense]

        rng = random.Random(options.seed)
        end = options.end_date or local_today()
        current_month = date(end.year, end.month, 1)

        generated: list[TransactionIn] = []
        for offset in range(options.months):
            month_start = add_months(current_month, -offset)
            last_day = days_in_month(month_start.year, month_start.month)
            if month_start == current_month:
                last_day = min(last_day, end.day)
            if options.include_income:
                for _ in range(rng.randint(1, 3)):
                    generated.append(
                        self._draw(
                            rng,
                            month_start,
                            rng.choice(INCOME_TEMPLATES),
                            income_categories,
                            is_income=True,
                            last_day=last_day,
                        )
                    )
            if expense_templates:
                expense_count = options.transactions_per_month - (
                    2 if options.include_income else 0
                )
                for _ in range(max(expense_count, 0)):
                    generated.append(
                        self._draw(
                            rng,
                            month_start,
                            rng.choice(expense_templates),
                            expense_categories,
                            is_income=False,
                            last_day=last_day,
                        )
                    )

        generated.sort(key=lambda item: item.date)

        txn_service = TransactionService(self.session, self.user_id)
        matcher = CategoryMatcher(self.session, self.user_id)
        tagger = RecurringPatternService(self.session, self.user_id)
        for data in generated:
            txn_service.insert_unflushed(account, data, matcher, tagger)

        BalanceEngine(self.session).recompute(account.id)
        self.session.commit()
        logger.info(
            f"sample_data: account_id={account.id} months={options.months} "
            f"generated={len(generated)}"
        )
        return len(generated)
