import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from app.config import settings
from app.database import SessionLocal, get_db
from app.logging_config import LoggerAdapter, get_logger
from app.models import ChatbotResponse, GreetingMessage, WhatsAppInstance
from app.schemas.webhook import WebhookResponse, WhatsAppWebhookPayload
from app.services.alert_service import alert_warning
from app.services.chatbot_matcher import get_effective_rules, resolve
from app.services.greeting_service import can_greet, get_active_greetings, select_greeting
from app.services.message_service import (
    find_message,
    is_first_contact,
    save_incoming_message,
    set_message_flags,
)
from app.services.usage_ledger import record_usage
from app.services.webhook_gate import admit, is_valid_instance_id, load_instance
from app.services.whatsapp_service import send_reply

logger = get_logger("webhook")

router = APIRouter()

SOURCE_CHATBOT = "chatbot"
SOURCE_GREETING = "greeting"


@dataclass
class ReplyJob:
    instance_pk: int
    instance_id: str
    phone: str
    message: str
    delay_seconds: int
    message_pk: int
    source: str
    source_id: int
    response_type: Optional[str] = "text"
    media_url: Optional[str] = None


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _business_now() -> datetime:
    try:
        return datetime.now(ZoneInfo(settings.business_timezone))
    except (KeyError, ValueError):
        return datetime.now(timezone.utc)


def _report_invalid_pattern(instance_id: str):
    def _report(rule: ChatbotResponse, pattern: str, error) -> None:
        context = {"instance_id": instance_id, "rule_id": rule.id, "pattern": pattern, "error": str(error)}
        logger.warning("Chatbot rule has invalid regex keyword", extra={"context": context})
        alert_warning("Chatbot rule has invalid regex keyword", context)

    return _report


async def _parse_webhook_payload(request: Request, instance_id: str) -> WhatsAppWebhookPayload | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read", extra={"context": {"instance_id": instance_id}})
        return WebhookResponse(success=True, message="Client disconnected")
    except Exception as exc:
        raw = await request.body()
        if not raw or not raw.strip():
            logger.info("Webhook probe with empty body", extra={"context": {"instance_id": instance_id}})
            return WebhookResponse(success=True, message="Empty payload")
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={
                "context": {
                    "instance_id": instance_id,
                    "error": str(exc),
                    "body_preview": raw[:200].decode("utf-8", "ignore"),
                }
            },
        )
        return WebhookResponse(success=False, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Invalid payload format")

    try:
        return WhatsAppWebhookPayload.model_validate(payload)
    except Exception as exc:
        logger.warning(
            "Webhook payload validation failed",
            extra={"context": {"instance_id": instance_id, "error": str(exc), "keys": list(payload.keys())[:20]}},
        )
        return WebhookResponse(success=False, message="Invalid webhook payload")


def dispatch_reply(job: ReplyJob, *, session_factory=None, sleep_func=time.sleep) -> bool:
    """Send a scheduled reply, then credit its usage.

    Runs after the webhook response went out. Usage is only recorded for
    replies the provider accepted.
    """
    log = LoggerAdapter(logger, {"instance_id": job.instance_id, "source": job.source, "source_id": job.source_id})
    if job.delay_seconds > 0:
        sleep_func(job.delay_seconds)

    db = (session_factory or SessionLocal)()
    try:
        instance = db.query(WhatsAppInstance).filter(WhatsAppInstance.id == job.instance_pk).first()
        if not instance or not instance.is_active:
            log.warning("Reply dropped: instance missing or inactive")
            return False

        sent = send_reply(
            instance,
            job.phone,
            job.message,
            response_type=job.response_type,
            media_url=job.media_url,
        )
        if not sent:
            log.warning("Reply not sent", context={"phone": job.phone})
            if job.source == SOURCE_GREETING:
                set_message_flags(db, job.message_pk, greeting_sent=False)
            return False

        model = ChatbotResponse if job.source == SOURCE_CHATBOT else GreetingMessage
        record_usage(db, job.source_id, datetime.now(timezone.utc), model=model)
        if job.source == SOURCE_CHATBOT:
            set_message_flags(db, job.message_pk, chatbot_responded=True)
        log.info("Reply sent", context={"phone": job.phone})
        return True
    except Exception as exc:
        db.rollback()
        log.error("Reply dispatch failed", context={"error": str(exc)})
        return False
    finally:
        db.close()


@router.post("/webhooks/whatsapp/{instance_id}", response_model=WebhookResponse)
async def handle_whatsapp_webhook(
    instance_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Inbound provider callback: admission, message log, greeting and chatbot reply."""
    decision = await admit(
        db,
        instance_id,
        headers=request.headers,
        source_address=_client_address(request),
        shared_token=request.query_params.get("token"),
    )
    if not decision.allowed:
        headers = {"Retry-After": str(decision.retry_after)} if decision.retry_after else None
        raise HTTPException(status_code=decision.status_code, detail=decision.detail, headers=headers)

    parsed = await _parse_webhook_payload(request, instance_id)
    if isinstance(parsed, WebhookResponse):
        return parsed

    message = parsed.message
    if message is None:
        return WebhookResponse(success=True, message=f"Event '{parsed.event}' ignored")
    if message.from_me:
        return WebhookResponse(success=True, message="Outgoing echo ignored")

    instance = decision.instance
    if message.id and find_message(db, message.id):
        logger.info("Duplicate webhook message", extra={"context": {"instance_id": instance_id, "id": message.id}})
        return WebhookResponse(success=True, message="Duplicate message")

    first_contact = is_first_contact(db, instance.instance_id, message.from_phone)
    record = save_incoming_message(db, instance, message, parsed.metadata)
    instance.last_activity_at = datetime.now(timezone.utc)
    db.commit()

    text = (message.body or "").strip()
    if message.type != "text" or not text:
        return WebhookResponse(success=True, message=f"Stored {message.type} message")

    greeting = None
    if settings.greetings_enabled:
        now = _business_now()
        if can_greet(db, instance.instance_id, message.from_phone, now):
            greetings = get_active_greetings(db, instance.company_id, instance.instance_id)
            greeting = select_greeting(greetings, now, first_contact)

    rule = None
    if settings.chatbot_enabled:
        rules = get_effective_rules(db, instance.company_id, instance.instance_id)
        rule = resolve(text, rules, on_invalid_pattern=_report_invalid_pattern(instance.instance_id))

    if greeting:
        set_message_flags(db, record.id, greeting_sent=True)
        background_tasks.add_task(
            dispatch_reply,
            ReplyJob(
                instance_pk=instance.id,
                instance_id=instance.instance_id,
                phone=message.from_phone,
                message=greeting.message_content,
                delay_seconds=max(greeting.delay_seconds or 0, settings.greeting_default_delay),
                message_pk=record.id,
                source=SOURCE_GREETING,
                source_id=greeting.id,
                response_type=greeting.message_type,
            ),
        )

    if rule:
        background_tasks.add_task(
            dispatch_reply,
            ReplyJob(
                instance_pk=instance.id,
                instance_id=instance.instance_id,
                phone=message.from_phone,
                message=rule.response_message,
                delay_seconds=max(rule.response_delay or 0, settings.chatbot_response_delay),
                message_pk=record.id,
                source=SOURCE_CHATBOT,
                source_id=rule.id,
                response_type=rule.response_type,
                media_url=rule.media_url,
            ),
        )

    logger.info(
        "Webhook message processed",
        extra={
            "context": {
                "instance_id": instance_id,
                "first_contact": first_contact,
                "greeting_id": greeting.id if greeting else None,
                "chatbot_response_id": rule.id if rule else None,
            }
        },
    )
    return WebhookResponse(
        success=True,
        message="Reply scheduled" if (rule or greeting) else "No automated reply",
        chatbot_response_id=rule.id if rule else None,
        greeting_id=greeting.id if greeting else None,
    )


@router.get("/webhooks/whatsapp/{instance_id}/verify")
def verify_whatsapp_webhook(instance_id: str, request: Request, db: Session = Depends(get_db)):
    """Provider setup probe; echoes hub.challenge when the provider sends one."""
    if not is_valid_instance_id(instance_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Instance ID is required")
    instance = load_instance(db, instance_id)
    if not instance:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instance not found")
    if not instance.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Instance inactive")

    api_settings = instance.api_settings if isinstance(instance.api_settings, dict) else {}
    expected_token = api_settings.get("webhook_token")
    if expected_token:
        provided = request.query_params.get("hub.verify_token") or request.query_params.get("token") or ""
        if not hmac.compare_digest(provided.encode("utf-8"), str(expected_token).encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")

    challenge = request.query_params.get("hub.challenge")
    if challenge:
        return PlainTextResponse(challenge)
    return {"ok": True, "instance_id": instance_id, "status": instance.status}
