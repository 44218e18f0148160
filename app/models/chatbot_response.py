from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from app.database import Base
from app.models.company import _utcnow


class ChatbotResponse(Base):
    """Keyword-triggered automated reply owned by a company.

    A null ``instance_id`` makes the rule apply to every instance of the company.
    """

    __tablename__ = "chatbot_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    instance_id = Column(String(255), ForeignKey("whatsapp_instances.instance_id", ondelete="CASCADE"))

    trigger_keywords = Column(JSON, nullable=False, default=list)
    response_message = Column(Text, nullable=False)
    response_type = Column(String(20), default="text")
    media_url = Column(Text)
    media_filename = Column(Text)

    priority = Column(Integer, nullable=False, default=1)
    match_type = Column(String(20), nullable=False, default="contains")
    case_sensitive = Column(Boolean, nullable=False, default=False)
    response_delay = Column(Integer, nullable=False, default=0)

    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_used_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
