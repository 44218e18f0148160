import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models import WhatsAppInstance, WhatsAppMessage
from app.schemas.webhook import WebhookMessage

MILLISECOND_EPOCH_THRESHOLD = 10**11


def is_first_contact(db: Session, instance_id: str, phone_number: str) -> bool:
    """True when no earlier inbound message from this phone reached the instance."""
    previous = (
        db.query(WhatsAppMessage.id)
        .filter(
            WhatsAppMessage.instance_id == instance_id,
            WhatsAppMessage.phone_number == phone_number,
            WhatsAppMessage.direction == "incoming",
        )
        .first()
    )
    return previous is None


def find_message(db: Session, message_id: str) -> Optional[WhatsAppMessage]:
    return db.query(WhatsAppMessage).filter(WhatsAppMessage.message_id == message_id).first()


def parse_provider_timestamp(timestamp: Optional[int]) -> datetime:
    """Provider epoch in seconds or milliseconds; anything unusable means now."""
    now = datetime.now(timezone.utc)
    if not timestamp:
        return now
    seconds = timestamp / 1000 if timestamp > MILLISECOND_EPOCH_THRESHOLD else timestamp
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return now


def save_incoming_message(
    db: Session,
    instance: WhatsAppInstance,
    message: WebhookMessage,
    message_metadata: Optional[dict] = None,
) -> WhatsAppMessage:
    """Save inbound message to the log."""
    record = WhatsAppMessage(
        message_id=message.id or f"in-{uuid.uuid4().hex}",
        company_id=instance.company_id,
        instance_id=instance.instance_id,
        phone_number=message.from_phone,
        message_content=message.body or "",
        message_type=message.type or "text",
        direction="incoming",
        status="delivered",
        received_at=parse_provider_timestamp(message.timestamp),
        message_metadata=message_metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(record)
    db.flush()
    return record


def set_message_flags(db: Session, message_pk: int, **flags: bool) -> None:
    """Update greeting_sent / chatbot_responded on a logged message."""
    db.execute(
        update(WhatsAppMessage)
        .where(WhatsAppMessage.id == message_pk)
        .values(**flags)
        .execution_options(synchronize_session=False)
    )
    db.commit()
