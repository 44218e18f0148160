from app.models.chatbot_response import ChatbotResponse
from app.models.company import Company
from app.models.greeting_message import GreetingMessage
from app.models.whatsapp_instance import WhatsAppInstance
from app.models.whatsapp_message import WhatsAppMessage

__all__ = [
    "Company",
    "WhatsAppInstance",
    "ChatbotResponse",
    "GreetingMessage",
    "WhatsAppMessage",
]
