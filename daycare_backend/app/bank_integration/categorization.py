"""
Category rules for imported business transactions.

Rules map a keyword found in a transaction's description and/or vendor to
a category name. They are applied when imported transactions are read back
from Firefly III; the sync itself does not categorize.
"""

import re
from typing import Iterable, Optional

from daycare_backend.app.models import CategoryRule, RuleMatchField, RuleTransactionType


def normalize_category_name(value: Optional[str]) -> str:
    """Collapse whitespace and Title Case each word ("  office   SUPPLIES" -> "Office Supplies")."""
    if not value:
        return ""
    words = re.split(r"\s+", value.strip())
    return " ".join(word[:1].upper() + word[1:].lower() for word in words if word)


def _rule_applies_to(rule: CategoryRule, direction: str) -> bool:
    if rule.transaction_type == RuleTransactionType.BOTH:
        return True
    if rule.transaction_type == RuleTransactionType.INCOME:
        return direction == "deposit"
    return direction == "withdrawal"


def _rule_matches(rule: CategoryRule, description: str, vendor: str) -> bool:
    keyword = (rule.keyword or "").strip().lower()
    if not keyword:
        return False

    if rule.match_field == RuleMatchField.VENDOR:
        haystacks = [vendor]
    elif rule.match_field == RuleMatchField.BOTH:
        haystacks = [description, vendor]
    else:
        haystacks = [description]

    return any(keyword in (h or "").lower() for h in haystacks)


def categorize(
    rules: Iterable[CategoryRule],
    description: Optional[str],
    vendor: Optional[str],
    direction: str
) -> Optional[str]:
    """
    Return the category of the first matching rule, or None.

    Rules are checked newest first so a freshly added rule overrides older ones.
    """
    ordered = sorted(
        rules,
        key=lambda r: (r.created_at is not None, r.created_at, r.id or 0),
        reverse=True
    )
    for rule in ordered:
        if _rule_applies_to(rule, direction) and _rule_matches(rule, description or "", vendor or ""):
            return normalize_category_name(rule.category)
    return None
