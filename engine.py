"""
Entry points used by the surrounding CRUD layer.

``LedgerEngine`` bundles balance recomputation, rule-based classification and
recurring payment detection behind one object bound to a session and a user.
"""

from typing import Optional

from sqlalchemy.orm import Session

from balances import BalanceEngine
from categorization import CategoryMatcher, RuleMatch
from models import RecurringPattern
from recurring import RecurringDetector
from schemas import DetectionOptions, RecurringCandidate
from services import AccountService, RecurringPatternService, get_current_user_id


class LedgerEngine:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.balances = BalanceEngine(session)

    def recompute_balances(self, account_id: int) -> None:
        """Rewrite every running balance of the account and commit.

        Raises ``NotFound`` for an unknown account and ``LedgerInconsistency``
        when the write fails, in which case the session has been rolled back.
        """
        AccountService(self.session, self.user_id).get(account_id, for_update=True)
        self.balances.recompute(account_id)
        self.session.commit()

    def classify(self, description: Optional[str]) -> Optional[RuleMatch]:
        return CategoryMatcher(self.session, self.user_id).classify(description)

    def detect_recurring(
        self, options: Optional[DetectionOptions] = None
    ) -> list[RecurringCandidate]:
        return RecurringDetector(self.session, self.user_id).detect(options)

    def confirm_candidate(self, candidate: RecurringCandidate) -> RecurringPattern:
        return RecurringPatternService(self.session, self.user_id).confirm(candidate)
