from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    current = "current"
    savings = "savings"
    credit = "credit"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"
    neutral = "neutral"


class Direction(str, Enum):
    debit = "debit"
    credit = "credit"


class Frequency(str, Enum):
    weekly = "weekly"
    fortnightly = "fortnightly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    account_number: Mapped[Optional[str]] = mapped_column(String(34))
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.current
    )
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    next_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "account_number", name="uq_account_user_number"),
        Index("ix_accounts_user", "user_id"),
        CheckConstraint("next_sequence > 0", name="ck_account_sequence_positive"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False, default=CategoryType.expense
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


recurring_pattern_transactions = Table(
    "recurring_pattern_transactions",
    Base.metadata,
    Column(
        "pattern_id",
        Integer,
        ForeignKey("recurring_patterns.id"),
        primary_key=True,
    ),
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id"),
        primary_key=True,
        unique=True,
    ),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    debit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_after_cents: Mapped[Optional[int]] = mapped_column(Integer)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    is_transfer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    linked_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    recurring_patterns: Mapped[list["RecurringPattern"]] = relationship(
        "RecurringPattern",
        secondary=recurring_pattern_transactions,
        back_populates="transactions",
    )

    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_txn_account_sequence"),
        Index("ix_transactions_ledger_order", "account_id", "date", "sequence", "id"),
        Index("ix_transactions_category", "category_id"),
        CheckConstraint("debit_cents >= 0", name="ck_transactions_debit_positive"),
        CheckConstraint("credit_cents >= 0", name="ck_transactions_credit_positive"),
    )

    @property
    def amount_cents(self) -> int:
        return self.debit_cents if self.debit_cents > 0 else self.credit_cents

    @property
    def direction(self) -> Direction:
        return Direction.debit if self.debit_cents > 0 else Direction.credit


class CategoryRule(Base, TimestampMixin):
    __tablename__ = "category_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    pattern: Mapped[str] = mapped_column(String(200), nullable=False)
    compiled_pattern: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        Index("ix_category_rules_user_active_priority", "user_id", "is_active", "priority", "id"),
    )


class RecurringPattern(Base, TimestampMixin):
    __tablename__ = "recurring_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description_pattern: Mapped[str] = mapped_column(String(255), nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(120))
    direction: Mapped[Direction] = mapped_column(
        SAEnum(Direction), nullable=False, default=Direction.debit
    )
    typical_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    typical_day: Mapped[Optional[int]] = mapped_column(Integer)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    is_subscription: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    last_seen: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        secondary=recurring_pattern_transactions,
        back_populates="recurring_patterns",
    )

    __table_args__ = (
        Index("ix_recurring_patterns_user", "user_id"),
        CheckConstraint(
            "typical_amount_cents >= 0", name="ck_recurring_amount_positive"
        ),
    )


class Anomaly(Base):
    __tablename__ = "anomalies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    anomaly_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[Severity] = mapped_column(
        SAEnum(Severity), nullable=False, default=Severity.low
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_dismissed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_anomalies_user", "user_id"),)
