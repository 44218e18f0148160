from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from app.database import Base
from app.models.company import _utcnow


class WhatsAppMessage(Base):
    __tablename__ = "whatsapp_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(255), unique=True, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    instance_id = Column(String(255), ForeignKey("whatsapp_instances.instance_id", ondelete="CASCADE"), nullable=False)
    phone_number = Column(String(20), nullable=False, index=True)
    message_content = Column(Text, nullable=False, default="")
    message_type = Column(String(20), default="text")
    direction = Column(String(10), nullable=False)  # incoming, outgoing
    status = Column(String(10), default="pending")  # pending, sent, delivered, read, failed
    external_id = Column(Text)
    greeting_sent = Column(Boolean, nullable=False, default=False)
    chatbot_responded = Column(Boolean, nullable=False, default=False)
    received_at = Column(DateTime(timezone=True))
    message_metadata = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
