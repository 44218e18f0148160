from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Time

from app.database import Base
from app.models.company import _utcnow


class GreetingMessage(Base):
    __tablename__ = "greeting_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    instance_id = Column(String(255), ForeignKey("whatsapp_instances.instance_id", ondelete="CASCADE"))
    name = Column(Text, nullable=False)
    message_content = Column(Text, nullable=False)
    message_type = Column(String(20), default="text")

    # first_contact, business_hours, after_hours, weekend, holiday, manual
    trigger_type = Column(String(20), nullable=False, default="first_contact")
    delay_seconds = Column(Integer, nullable=False, default=0)
    business_start_time = Column(Time)
    business_end_time = Column(Time)
    business_days = Column(JSON)  # ISO weekdays, [1, 2, 3, 4, 5] = Mon-Fri
    excluded_dates = Column(JSON)  # ["2024-12-25", ...]

    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_used_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
