"""Chatbot rule matching: keyword predicates, priority ordering and tie-break."""

import re
from enum import Enum
from functools import lru_cache
from typing import Callable, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ChatbotResponse

logger = get_logger("chatbot_matcher")


class MatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"


InvalidPatternHandler = Callable[[ChatbotResponse, str, re.error], None]


@lru_cache(maxsize=512)
def _compile(pattern: str, flags: int) -> re.Pattern:
    return re.compile(pattern, flags)


def _normalize(value: str, case_sensitive: bool) -> str:
    # casefold, not lower: "STRASSE" matches "straße"
    return value if case_sensitive else value.casefold()


def _matches_keyword(match_type: MatchType, text: str, keyword: str) -> bool:
    if match_type is MatchType.EXACT:
        return text == keyword
    if match_type is MatchType.CONTAINS:
        return keyword in text
    if match_type is MatchType.STARTS_WITH:
        return text.startswith(keyword)
    if match_type is MatchType.ENDS_WITH:
        return text.endswith(keyword)
    return False


def match_rule(
    text: str,
    rule: ChatbotResponse,
    on_invalid_pattern: Optional[InvalidPatternHandler] = None,
) -> bool:
    """Return True if any of the rule's keywords matches the text.

    Ignores ``is_active``; callers that need the active filter use ``resolve``.
    Never raises on bad rule configuration.
    """
    try:
        match_type = MatchType(rule.match_type)
    except ValueError:
        logger.warning(
            "Unknown chatbot match_type",
            extra={"context": {"rule_id": rule.id, "match_type": rule.match_type}},
        )
        return False

    keywords = [k for k in (rule.trigger_keywords or []) if isinstance(k, str) and k.strip()]
    if not keywords:
        return False

    case_sensitive = bool(rule.case_sensitive)
    raw_text = (text or "").strip()

    if match_type is MatchType.REGEX:
        flags = 0 if case_sensitive else re.IGNORECASE
        for pattern in keywords:
            try:
                compiled = _compile(pattern, flags)
            except re.error as exc:
                if on_invalid_pattern is not None:
                    on_invalid_pattern(rule, pattern, exc)
                continue
            if compiled.search(raw_text):
                return True
        return False

    normalized_text = _normalize(raw_text, case_sensitive)
    return any(
        _matches_keyword(match_type, normalized_text, _normalize(keyword, case_sensitive)) for keyword in keywords
    )


def resolve(
    text: str,
    effective_rules: Sequence[ChatbotResponse],
    on_invalid_pattern: Optional[InvalidPatternHandler] = None,
) -> Optional[ChatbotResponse]:
    """Pick the single rule that should answer ``text``.

    Highest priority wins; equal priorities keep the input order, so the first
    candidate seen is kept. Does not touch usage counters.
    """
    best: Optional[ChatbotResponse] = None
    for rule in effective_rules:
        if not rule.is_active:
            continue
        if not match_rule(text, rule, on_invalid_pattern):
            continue
        if best is None or (rule.priority or 0) > (best.priority or 0):
            best = rule
    return best


def get_effective_rules(db: Session, company_id: int, instance_id: Optional[str]) -> list[ChatbotResponse]:
    """Owner-wide plus instance-scoped active rules, oldest first."""
    scope = ChatbotResponse.instance_id.is_(None)
    if instance_id:
        scope = or_(scope, ChatbotResponse.instance_id == instance_id)
    return (
        db.query(ChatbotResponse)
        .filter(
            ChatbotResponse.company_id == company_id,
            ChatbotResponse.is_active.is_(True),
            scope,
        )
        .order_by(ChatbotResponse.created_at.asc(), ChatbotResponse.id.asc())
        .all()
    )
