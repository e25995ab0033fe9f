"""
Wildcard category rules.

A rule pattern is one or more comma-separated alternatives. Inside an
alternative ``%`` matches any run of characters (including none), ``_``
matches exactly one character and a backslash escapes one of ``% _ , \\``.
Everything else is literal. Matching is case-insensitive and anchored on the
whole description, so ``TESCO%`` is a prefix match and ``%TESCO%`` a
substring match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from errors import PatternValidationError
from models import Category, CategoryRule


_ESCAPABLE = {"%", "_", ",", "\\"}
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WORD_SPLIT = re.compile(r"[\s*#!@$%^&()_+=\[\]{};:'\",.<>?/\\|-]+")


def split_alternatives(pattern: str) -> list[list[tuple[str, bool]]]:
    """Split a rule pattern into alternatives of (char, is_literal) tokens."""
    if pattern is None or not pattern.strip():
        raise PatternValidationError("Pattern cannot be empty")
    if _CONTROL_CHARS.search(pattern):
        raise PatternValidationError("Pattern contains control characters")

    alternatives: list[list[tuple[str, bool]]] = []
    current: list[tuple[str, bool]] = []
    idx = 0
    while idx < len(pattern):
        ch = pattern[idx]
        if ch == "\\":
            if idx + 1 >= len(pattern):
                raise PatternValidationError("Pattern ends with a dangling escape")
            nxt = pattern[idx + 1]
            if nxt not in _ESCAPABLE:
                raise PatternValidationError(f"Invalid escape sequence '\\{nxt}'")
            current.append((nxt, True))
            idx += 2
            continue
        if ch == ",":
            alternatives.append(current)
            current = []
        else:
            current.append((ch, False))
        idx += 1
    alternatives.append(current)

    cleaned: list[list[tuple[str, bool]]] = []
    for tokens in alternatives:
        start, end = 0, len(tokens)
        while start < end and tokens[start] == (" ", False):
            start += 1
        while end > start and tokens[end - 1] == (" ", False):
            end -= 1
        if start == end:
            raise PatternValidationError("Pattern contains an empty alternative")
        cleaned.append(tokens[start:end])
    return cleaned


def translate_pattern(pattern: str) -> str:
    """Translate a wildcard pattern into an anchored regular expression source."""
    branches: list[str] = []
    for tokens in split_alternatives(pattern):
        parts: list[str] = []
        for ch, literal in tokens:
            if not literal and ch == "%":
                parts.append(".*")
            elif not literal and ch == "_":
                parts.append(".")
            else:
                parts.append(re.escape(ch))
        branches.append("".join(parts))
    return r"(?is)\A(?:" + "|".join(branches) + r")\Z"


def compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(translate_pattern(pattern))


def extract_pattern(description: str) -> Optional[str]:
    """Build a ``%WORD%`` pattern from the first significant word of a description."""
    if not description or not description.strip():
        return None
    for word in _WORD_SPLIT.split(description.strip().upper()):
        if len(word) <= 3 or word.isdigit():
            continue
        return f"%{word}%"
    return None


@dataclass(frozen=True)
class RuleMatch:
    rule: CategoryRule
    category: Category

    @property
    def category_id(self) -> int:
        return self.category.id


class CategoryMatcher:
    """First-match classifier over a user's active rules.

    The ordered rules are loaded on first use and kept for the lifetime of
    the instance. Build a new matcher after rules change.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self._rules: Optional[list[tuple[CategoryRule, re.Pattern[str]]]] = None

    def active_rules(self) -> list[CategoryRule]:
        stmt = (
            select(CategoryRule)
            .options(joinedload(CategoryRule.category))
            .where(
                CategoryRule.user_id == self.user_id,
                CategoryRule.is_active.is_(True),
            )
            .order_by(CategoryRule.priority.asc(), CategoryRule.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def _ordered_rules(self) -> list[tuple[CategoryRule, re.Pattern[str]]]:
        if self._rules is None:
            self._rules = [
                (rule, re.compile(rule.compiled_pattern)) for rule in self.active_rules()
            ]
        return self._rules

    def classify(self, description: Optional[str]) -> Optional[RuleMatch]:
        text = (description or "").strip()
        if not text:
            return None
        for rule, regex in self._ordered_rules():
            if regex.match(text):
                return RuleMatch(rule=rule, category=rule.category)
        return None
