from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import GreetingMessage, WhatsAppMessage

logger = get_logger("greeting_service")

DEFAULT_BUSINESS_DAYS = (1, 2, 3, 4, 5)
WEEKEND_DAYS = (6, 7)


class GreetingTrigger(str, Enum):
    FIRST_CONTACT = "first_contact"
    BUSINESS_HOURS = "business_hours"
    AFTER_HOURS = "after_hours"
    WEEKEND = "weekend"
    HOLIDAY = "holiday"
    MANUAL = "manual"


def _parse_time(value: str, default: time) -> time:
    try:
        hours, minutes = value.split(":", 1)
        return time(int(hours), int(minutes))
    except (AttributeError, TypeError, ValueError):
        return default


def _business_window(greeting: GreetingMessage) -> tuple[time, time]:
    start = greeting.business_start_time or _parse_time(settings.business_hours_start, time(9, 0))
    end = greeting.business_end_time or _parse_time(settings.business_hours_end, time(18, 0))
    return start, end


def _business_days(greeting: GreetingMessage) -> set[int]:
    days = greeting.business_days or DEFAULT_BUSINESS_DAYS
    normalized = set()
    for day in days:
        try:
            normalized.add(int(day))
        except (TypeError, ValueError):
            continue
    return normalized or set(DEFAULT_BUSINESS_DAYS)


def is_within_business_hours(greeting: GreetingMessage, now: datetime) -> bool:
    if now.isoweekday() not in _business_days(greeting):
        return False
    start, end = _business_window(greeting)
    return start <= now.time() < end


def is_excluded_date(greeting: GreetingMessage, now: datetime) -> bool:
    excluded = greeting.excluded_dates or []
    return now.date().isoformat() in {str(value) for value in excluded}


def greeting_applies(greeting: GreetingMessage, now: datetime, is_first_contact: bool) -> bool:
    if not greeting.is_active or is_excluded_date(greeting, now):
        return False

    try:
        trigger = GreetingTrigger(greeting.trigger_type)
    except ValueError:
        logger.warning(
            "Unknown greeting trigger_type",
            extra={"context": {"greeting_id": greeting.id, "trigger_type": greeting.trigger_type}},
        )
        return False

    if trigger is GreetingTrigger.FIRST_CONTACT:
        return is_first_contact
    if trigger is GreetingTrigger.BUSINESS_HOURS:
        return is_within_business_hours(greeting, now)
    if trigger is GreetingTrigger.AFTER_HOURS:
        return now.isoweekday() in _business_days(greeting) and not is_within_business_hours(greeting, now)
    if trigger is GreetingTrigger.WEEKEND:
        return now.isoweekday() in WEEKEND_DAYS
    # holiday and manual greetings are sent by operators, never automatically
    return False


def select_greeting(
    greetings: Sequence[GreetingMessage],
    now: datetime,
    is_first_contact: bool,
) -> Optional[GreetingMessage]:
    """First greeting (in input order) whose trigger applies right now."""
    for greeting in greetings:
        if greeting_applies(greeting, now, is_first_contact):
            return greeting
    return None


def get_active_greetings(db: Session, company_id: int, instance_id: Optional[str]) -> list[GreetingMessage]:
    scope = GreetingMessage.instance_id.is_(None)
    if instance_id:
        scope = or_(scope, GreetingMessage.instance_id == instance_id)
    return (
        db.query(GreetingMessage)
        .filter(GreetingMessage.company_id == company_id, GreetingMessage.is_active.is_(True), scope)
        .order_by(GreetingMessage.created_at.asc(), GreetingMessage.id.asc())
        .all()
    )


def greetings_sent_today(db: Session, instance_id: str, phone_number: str, now: datetime) -> int:
    """Greetings flagged on this contact's messages since local midnight of ``now``."""
    local_midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day_start = local_midnight.astimezone(timezone.utc) if local_midnight.tzinfo else local_midnight
    return (
        db.query(WhatsAppMessage)
        .filter(
            WhatsAppMessage.instance_id == instance_id,
            WhatsAppMessage.phone_number == phone_number,
            WhatsAppMessage.greeting_sent.is_(True),
            WhatsAppMessage.created_at >= day_start,
            WhatsAppMessage.created_at < day_start + timedelta(days=1),
        )
        .count()
    )


def can_greet(db: Session, instance_id: str, phone_number: str, now: datetime) -> bool:
    limit = settings.greeting_max_per_contact_per_day
    if limit <= 0:
        return False
    return greetings_sent_today(db, instance_id, phone_number, now) < limit
