"""
Recurring payment detection.

Transactions are grouped by normalised description, direction and amount
bucket. A group is proposed as a candidate only when it has enough
occurrences and every gap between consecutive occurrences sits inside the
tolerance window of a single canonical interval. Nothing is persisted here;
confirmation lives in ``services.RecurringPatternService``.
"""

from __future__ import annotations

import logging
import re
import statistics
from collections import Counter, defaultdict
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import NotFound
from models import Account, Direction, Frequency, RecurringPattern, Transaction
from recurrence import local_today, next_expected_date
from schemas import DetectionOptions, RecurringCandidate


logger = logging.getLogger(__name__)


# (frequency, canonical gap in days, allowed deviation in days)
CANONICAL_INTERVALS: list[tuple[Frequency, int, int]] = [
    (Frequency.weekly, 7, 2),
    (Frequency.fortnightly, 14, 3),
    (Frequency.monthly, 30, 4),
    (Frequency.quarterly, 91, 10),
    (Frequency.yearly, 365, 15),
]

DAY_OF_MONTH_FREQUENCIES = {Frequency.monthly, Frequency.quarterly, Frequency.yearly}

MIN_DESCRIPTION_LENGTH = 3

SUBSCRIPTION_KEYWORDS = (
    "NETFLIX",
    "SPOTIFY",
    "DISNEY",
    "AMAZON PRIME",
    "APPLE",
    "YOUTUBE",
    "HBO",
    "HULU",
    "PLAYSTATION",
    "XBOX",
    "NINTENDO",
    "AUDIBLE",
    "DROPBOX",
    "GOOGLE",
    "MICROSOFT",
    "ADOBE",
    "PATREON",
)

_PAYMENT_PREFIX = re.compile(
    r"^(?:CARD PAYMENT TO|DIRECT DEBIT TO|STANDING ORDER TO|FASTER PAYMENT TO"
    r"|BANK TRANSFER TO|PAYMENT TO)\s+"
)
_DATE = re.compile(r"\b\d{1,4}[/\-.]\d{1,2}(?:[/\-.]\d{1,4})?\b")
_REFERENCE = re.compile(r"\b(?:REF|TXN)\b[:.#]?\s*[A-Z0-9\-]*\d[A-Z0-9\-]*")
_HASH_NUMBER = re.compile(r"#\s*\d+")
_LONG_DIGITS = re.compile(r"\b\d{4,}\b")
_TRAILING_NUMBERS = re.compile(r"(?:\s+\d+)+$")
_STARS = re.compile(r"\s*\*+\s*")
_SPACES = re.compile(r"\s+")
_MERCHANT_SPLIT = re.compile(r"[,*\-/\\|]")


def normalize_description(description: Optional[str]) -> str:
    """Grouping key for a description.

    Passes repeat until the text stops changing, so a prefix uncovered by
    removing a leading date is stripped too and normalising a key is a no-op.
    """
    if not description:
        return ""
    text = description.upper()
    while True:
        cleaned = _normalize_pass(text)
        if cleaned == text:
            return cleaned
        text = cleaned


def _normalize_pass(text: str) -> str:
    text = _STARS.sub(" ", text)
    text = _SPACES.sub(" ", text).strip()
    text = _PAYMENT_PREFIX.sub("", text)
    text = _DATE.sub(" ", text)
    text = _REFERENCE.sub(" ", text)
    text = _HASH_NUMBER.sub(" ", text)
    text = _LONG_DIGITS.sub(" ", text)
    text = _SPACES.sub(" ", text).strip()
    text = _TRAILING_NUMBERS.sub("", text)
    return text.strip(" -/.,:;")


def extract_merchant_name(description: Optional[str]) -> str:
    if not description:
        return ""
    name = description.upper()
    name = _DATE.sub(" ", name)
    name = _REFERENCE.sub(" ", name)
    name = _SPACES.sub(" ", name).strip()
    name = _PAYMENT_PREFIX.sub("", name)

    first = _MERCHANT_SPLIT.split(name)[0].strip()
    if len(first) > 2:
        name = first
    name = _TRAILING_NUMBERS.sub("", name).strip()
    return " ".join(word.capitalize() for word in name.split(" ") if word)


def is_subscription_description(description: str) -> bool:
    upper = description.upper()
    return any(keyword in upper for keyword in SUBSCRIPTION_KEYWORDS)


def bucket_by_amount(
    transactions: list[Transaction], tolerance: float
) -> list[list[Transaction]]:
    """Split transactions into buckets whose amounts lie within ``tolerance`` of the smallest."""
    ordered = sorted(transactions, key=lambda t: (t.amount_cents, t.date, t.id))
    buckets: list[list[Transaction]] = []
    anchor = 0
    for txn in ordered:
        if buckets and txn.amount_cents <= anchor * (1 + tolerance):
            buckets[-1].append(txn)
            continue
        anchor = txn.amount_cents
        buckets.append([txn])
    return buckets


def match_interval(gaps: list[int]) -> Optional[Frequency]:
    if not gaps:
        return None
    for frequency, days, deviation in CANONICAL_INTERVALS:
        if all(abs(gap - days) <= deviation for gap in gaps):
            return frequency
    return None


def _median_cents(values: list[int]) -> int:
    median = Decimal(str(statistics.median(values)))
    return int(median.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RecurringDetector:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        min_occurrences: Optional[int] = None,
        amount_tolerance: Optional[float] = None,
        lookback_days: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.user_id = user_id
        self.min_occurrences = min_occurrences or settings.recurring_min_occurrences
        self.amount_tolerance = (
            amount_tolerance
            if amount_tolerance is not None
            else settings.recurring_amount_tolerance
        )
        self.lookback_days = (
            lookback_days
            if lookback_days is not None
            else settings.recurring_lookback_days
        )

    def _account_ids(self, account_id: Optional[int]) -> list[int]:
        stmt = select(Account.id).where(Account.user_id == self.user_id)
        if account_id is not None:
            stmt = stmt.where(Account.id == account_id)
        ids = list(self.session.scalars(stmt).all())
        if not ids:
            raise NotFound("Account not found" if account_id else "No ledger for user")
        return ids

    def _history(self, account_ids: list[int], options: DetectionOptions) -> list[Transaction]:
        lookback = (
            options.lookback_days
            if options.lookback_days is not None
            else self.lookback_days
        )
        stmt = (
            select(Transaction)
            .where(
                Transaction.account_id.in_(account_ids),
                Transaction.is_transfer.is_(False),
                ~Transaction.recurring_patterns.any(),
            )
            .order_by(Transaction.date.asc(), Transaction.sequence.asc(), Transaction.id.asc())
        )
        if lookback:
            today = options.today or local_today()
            stmt = stmt.where(Transaction.date >= today - timedelta(days=lookback))
        return list(self.session.scalars(stmt).all())

    def _known_patterns(self) -> tuple[set[str], set[str]]:
        rows = self.session.execute(
            select(
                RecurringPattern.description_pattern, RecurringPattern.merchant_name
            ).where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.is_active.is_(True),
            )
        ).all()
        descriptions = {normalize_description(row[0]) for row in rows if row[0]}
        merchants = {row[1].strip().lower() for row in rows if row[1] and row[1].strip()}
        return descriptions, merchants

    def detect(self, options: Optional[DetectionOptions] = None) -> list[RecurringCandidate]:
        options = options or DetectionOptions()
        min_occurrences = options.min_occurrences or self.min_occurrences
        tolerance = (
            options.amount_tolerance
            if options.amount_tolerance is not None
            else self.amount_tolerance
        )

        account_ids = self._account_ids(options.account_id)
        history = self._history(account_ids, options)

        groups: dict[tuple[str, Direction], list[Transaction]] = defaultdict(list)
        for txn in history:
            if txn.amount_cents <= 0:
                continue
            key = normalize_description(txn.description)
            if len(key) < MIN_DESCRIPTION_LENGTH:
                continue
            groups[(key, txn.direction)].append(txn)

        known_descriptions, known_merchants = self._known_patterns()

        candidates: list[RecurringCandidate] = []
        for (key, direction), txns in groups.items():
            if len(txns) < min_occurrences:
                continue
            if key in known_descriptions:
                continue
            merchant = extract_merchant_name(txns[0].description)
            if merchant and merchant.lower() in known_merchants:
                continue
            for bucket in bucket_by_amount(txns, tolerance):
                candidate = self._evaluate(key, direction, merchant, bucket, min_occurrences)
                if candidate:
                    candidates.append(candidate)

        candidates.sort(key=lambda c: (-c.occurrence_count, c.description_pattern))
        logger.info(
            f"detect_recurring: user_id={self.user_id} transactions={len(history)} "
            f"groups={len(groups)} candidates={len(candidates)}"
        )
        return candidates

    def _evaluate(
        self,
        key: str,
        direction: Direction,
        merchant: str,
        bucket: list[Transaction],
        min_occurrences: int,
    ) -> Optional[RecurringCandidate]:
        if len(bucket) < min_occurrences:
            return None
        ordered = sorted(bucket, key=lambda t: (t.date, t.sequence, t.id))
        gaps = [
            (ordered[i].date - ordered[i - 1].date).days for i in range(1, len(ordered))
        ]
        frequency = match_interval(gaps)
        if frequency is None:
            return None

        last_seen = ordered[-1].date
        typical_day = None
        if frequency in DAY_OF_MONTH_FREQUENCIES:
            typical_day = int(statistics.median_low([t.date.day for t in ordered]))

        categories = Counter(t.category_id for t in ordered if t.category_id is not None)
        category_id = categories.most_common(1)[0][0] if categories else None

        return RecurringCandidate(
            description_pattern=key,
            merchant_name=merchant or key.title(),
            direction=direction,
            typical_amount_cents=_median_cents([t.amount_cents for t in ordered]),
            typical_day=typical_day,
            frequency=frequency,
            is_subscription=(
                direction == Direction.debit and is_subscription_description(key)
            ),
            category_id=category_id,
            occurrence_count=len(ordered),
            transaction_ids=[t.id for t in ordered],
            last_seen=last_seen,
            next_expected=next_expected_date(frequency, last_seen, typical_day),
            average_interval_days=round(sum(gaps) / len(gaps), 2),
        )
