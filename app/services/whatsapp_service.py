"""Outbound messages through the WhatsApp provider HTTP API."""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.models import Company, WhatsAppInstance
from app.schemas.order import OrderNotification
from app.services.alert_service import alert_error

logger = get_logger("whatsapp_service")

BRAZIL_COUNTRY_CODE = "55"


def format_phone_number(phone: str) -> str:
    """Keep digits only; local 11-digit numbers get the country code."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 11 and not digits.startswith(BRAZIL_COUNTRY_CODE):
        digits = BRAZIL_COUNTRY_CODE + digits
    return digits


def _auth_headers(instance: WhatsAppInstance) -> dict[str, str]:
    token = instance.api_token or settings.whatsapp_api_key
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _post(instance: WhatsAppInstance, path: str, payload: dict, *, phone: str) -> bool:
    url = f"{settings.whatsapp_api_base_url.rstrip('/')}{path}"
    try:
        with httpx.Client(timeout=settings.whatsapp_api_timeout) as client:
            response = client.post(url, json=payload, headers=_auth_headers(instance))
    except httpx.HTTPError as e:
        logger.error(
            "WhatsApp provider request failed",
            extra={"context": {"instance_id": instance.instance_id, "phone": phone, "error": str(e)}},
        )
        alert_error("WhatsApp send failed", {"instance_id": instance.instance_id, "error": str(e)})
        return False

    if response.is_success:
        logger.info(
            "WhatsApp message sent",
            extra={"context": {"instance_id": instance.instance_id, "phone": phone, "path": path}},
        )
        return True

    logger.error(
        "WhatsApp provider rejected message",
        extra={
            "context": {
                "instance_id": instance.instance_id,
                "phone": phone,
                "status": response.status_code,
                "body": response.text[:200],
            }
        },
    )
    return False


def send_text_message(instance: WhatsAppInstance, phone: str, message: str) -> bool:
    if not message:
        logger.warning(f"send_text_message: empty message for instance={instance.instance_id}")
        return False
    formatted = format_phone_number(phone)
    return _post(
        instance,
        "/messages/text",
        {"instance_id": instance.instance_id, "phone": formatted, "message": message},
        phone=formatted,
    )


def send_image_message(instance: WhatsAppInstance, phone: str, image_url: str, caption: Optional[str] = None) -> bool:
    formatted = format_phone_number(phone)
    return _post(
        instance,
        "/messages/image",
        {"instance_id": instance.instance_id, "phone": formatted, "image_url": image_url, "caption": caption},
        phone=formatted,
    )


def send_reply(
    instance: WhatsAppInstance,
    phone: str,
    message: str,
    *,
    response_type: Optional[str] = "text",
    media_url: Optional[str] = None,
) -> bool:
    """Send a configured reply; images go out with the message as caption."""
    if response_type == "image" and media_url:
        return send_image_message(instance, phone, media_url, caption=message or None)
    return send_text_message(instance, phone, message)


def format_brl(amount: Decimal) -> str:
    """1234.5 -> 'R$ 1.234,50'."""
    quantized = Decimal(amount).quantize(Decimal("0.01"))
    integer_part, _, cents = f"{quantized:,.2f}".partition(".")
    return f"R$ {integer_part.replace(',', '.')},{cents}"


def build_order_notification(order: OrderNotification) -> str:
    created_at = order.created_at or datetime.now()
    lines = [
        "🆕 *NOVO PEDIDO RECEBIDO!*",
        "",
        f"📋 *Pedido:* #{order.order_number}",
        f"👤 *Cliente:* {order.customer_name}",
    ]
    if order.customer_phone:
        lines.append(f"📱 *Telefone:* {order.customer_phone}")
    lines.append(f"💰 *Total:* {format_brl(order.total)}")
    if order.delivery_address:
        lines.append(f"🚚 *Entrega:* {order.delivery_address}")
    lines.append(f"⏰ *Horário:* {created_at.strftime('%d/%m/%Y %H:%M')}")
    return "\n".join(lines)


def send_order_notification(instance: WhatsAppInstance, company: Company, order: OrderNotification) -> bool:
    """Tell the restaurant about a new order on its own WhatsApp number."""
    if not instance.is_active or not company.phone:
        logger.warning(
            "Order notification skipped: WhatsApp not configured for company",
            extra={"context": {"company_id": company.id, "order_number": order.order_number}},
        )
        return False
    return send_text_message(instance, company.phone, build_order_notification(order))
