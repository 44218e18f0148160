"""Best-effort usage counters for chatbot rules and greetings."""

from datetime import datetime

from sqlalchemy import case, func, literal, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ChatbotResponse
from app.services.alert_service import alert_error

logger = get_logger("usage_ledger")


def record_usage(db: Session, rule_id: int, fired_at: datetime, *, model=ChatbotResponse) -> bool:
    """Increment ``usage_count`` and move ``last_used_at`` forward.

    One UPDATE statement, so concurrent calls never lose increments. A late,
    out-of-order ``fired_at`` still counts but leaves ``last_used_at`` alone.
    Never raises: returns False when the write failed.
    """
    fired_at_value = literal(fired_at, model.last_used_at.type)
    stmt = (
        update(model)
        .where(model.id == rule_id)
        .values(
            usage_count=func.coalesce(model.usage_count, 0) + 1,
            last_used_at=case(
                (or_(model.last_used_at.is_(None), model.last_used_at < fired_at_value), fired_at_value),
                else_=model.last_used_at,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Usage ledger update failed",
            extra={"context": {"table": model.__tablename__, "id": rule_id, "error": str(exc)}},
        )
        alert_error("Usage ledger update failed", {"table": model.__tablename__, "id": rule_id})
        return False

    if result.rowcount == 0:
        logger.warning(
            "Usage ledger target not found",
            extra={"context": {"table": model.__tablename__, "id": rule_id}},
        )
        return False
    return True


def usage_summary(db: Session, company_id: int, limit: int = 10) -> dict:
    """Totals and top rules by usage for the company's dashboard."""
    base = db.query(ChatbotResponse).filter(ChatbotResponse.company_id == company_id)

    total_rules = base.count()
    active_rules = base.filter(ChatbotResponse.is_active.is_(True)).count()
    never_used = base.filter(func.coalesce(ChatbotResponse.usage_count, 0) == 0).count()
    total_usage = (
        db.query(func.coalesce(func.sum(ChatbotResponse.usage_count), 0))
        .filter(ChatbotResponse.company_id == company_id)
        .scalar()
    )

    top_rules = (
        base.filter(ChatbotResponse.usage_count > 0)
        .order_by(ChatbotResponse.usage_count.desc(), ChatbotResponse.id.asc())
        .limit(limit)
        .all()
    )

    return {
        "total_rules": total_rules,
        "active_rules": active_rules,
        "never_used": never_used,
        "total_usage": int(total_usage or 0),
        "top_rules": [
            {
                "id": rule.id,
                "trigger_keywords": list(rule.trigger_keywords or []),
                "usage_count": rule.usage_count,
                "last_used_at": rule.last_used_at,
            }
            for rule in top_rules
        ],
    }
