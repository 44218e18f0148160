from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.company import _utcnow


class WhatsAppInstance(Base):
    __tablename__ = "whatsapp_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(255), unique=True, nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    name = Column(Text, nullable=False)
    phone_number = Column(String(20))
    status = Column(String(20), default="disconnected")  # disconnected, connecting, connected, error
    api_token = Column(Text)
    webhook_url = Column(Text)
    error_message = Column(Text)
    last_activity_at = Column(DateTime(timezone=True))
    # webhook_token, allowed_user_agents, allowed_ips, webhook_rate_limit, webhook_rate_limit_window
    api_settings = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    company = relationship("Company", back_populates="instances")
