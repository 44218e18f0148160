"""Admission checks for inbound WhatsApp provider webhooks.

Order matters: existence -> active -> token -> user-agent -> source address ->
rate limit. Only an admitted call consumes a rate-limit slot.
"""

import hmac
import re
from enum import Enum
from typing import Mapping, Optional

from fastapi import status
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import WhatsAppInstance
from app.services.rate_limiter import WebhookRateLimiter, webhook_rate_limiter

logger = get_logger("webhook_gate")

INSTANCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:@-]{1,255}$")
DEFAULT_MAX_REQUESTS = 100
DEFAULT_WINDOW_SECONDS = 60


class AdmissionOutcome(str, Enum):
    ADMITTED = "admitted"
    INVALID_INSTANCE_ID = "invalid_instance_id"
    INSTANCE_NOT_FOUND = "instance_not_found"
    INSTANCE_INACTIVE = "instance_inactive"
    TOKEN_MISMATCH = "token_mismatch"
    USER_AGENT_REJECTED = "user_agent_rejected"
    SOURCE_NOT_ALLOWED = "source_not_allowed"
    RATE_LIMITED = "rate_limited"


OUTCOME_STATUS = {
    AdmissionOutcome.ADMITTED: status.HTTP_200_OK,
    AdmissionOutcome.INVALID_INSTANCE_ID: status.HTTP_400_BAD_REQUEST,
    AdmissionOutcome.INSTANCE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AdmissionOutcome.INSTANCE_INACTIVE: status.HTTP_403_FORBIDDEN,
    AdmissionOutcome.TOKEN_MISMATCH: status.HTTP_401_UNAUTHORIZED,
    AdmissionOutcome.USER_AGENT_REJECTED: status.HTTP_403_FORBIDDEN,
    AdmissionOutcome.SOURCE_NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
    AdmissionOutcome.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}

OUTCOME_DETAIL = {
    AdmissionOutcome.ADMITTED: "Admitted",
    AdmissionOutcome.INVALID_INSTANCE_ID: "Instance ID is required",
    AdmissionOutcome.INSTANCE_NOT_FOUND: "Instance not found",
    AdmissionOutcome.INSTANCE_INACTIVE: "Instance inactive",
    AdmissionOutcome.TOKEN_MISMATCH: "Invalid webhook token",
    AdmissionOutcome.USER_AGENT_REJECTED: "User-Agent not allowed",
    AdmissionOutcome.SOURCE_NOT_ALLOWED: "Source address not allowed",
    AdmissionOutcome.RATE_LIMITED: "Rate limit exceeded",
}


class AdmissionDecision:
    def __init__(
        self,
        outcome: AdmissionOutcome,
        *,
        instance: Optional[WhatsAppInstance] = None,
        retry_after: Optional[int] = None,
        count: Optional[int] = None,
    ) -> None:
        self.outcome = outcome
        self.instance = instance
        self.retry_after = retry_after
        self.count = count

    @property
    def allowed(self) -> bool:
        return self.outcome is AdmissionOutcome.ADMITTED

    @property
    def status_code(self) -> int:
        return OUTCOME_STATUS[self.outcome]

    @property
    def detail(self) -> str:
        return OUTCOME_DETAIL[self.outcome]


def is_valid_instance_id(instance_id: Optional[str]) -> bool:
    return bool(instance_id) and bool(INSTANCE_ID_PATTERN.match(instance_id))


def load_instance(db: Session, instance_id: str) -> Optional[WhatsAppInstance]:
    return db.query(WhatsAppInstance).filter(WhatsAppInstance.instance_id == instance_id).first()


def _api_settings(instance: WhatsAppInstance) -> dict:
    return instance.api_settings if isinstance(instance.api_settings, dict) else {}


def _as_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _positive_int(value, default: int) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        return default
    return result if result > 0 else default


def get_rate_limit_settings(instance: WhatsAppInstance) -> tuple[int, int]:
    """Return (max_requests, window_seconds) for the instance."""
    api_settings = _api_settings(instance)
    max_requests = _positive_int(
        api_settings.get("webhook_rate_limit"), settings.webhook_max_requests or DEFAULT_MAX_REQUESTS
    )
    window_seconds = _positive_int(
        api_settings.get("webhook_rate_limit_window"), settings.webhook_rate_limit_window or DEFAULT_WINDOW_SECONDS
    )
    return max_requests, window_seconds


def rate_limit_key(instance_id: str, source_address: str) -> str:
    return f"whatsapp_webhook:{instance_id}:{source_address}"


def _reject(outcome: AdmissionOutcome, instance_id: Optional[str], source_address: str, **context) -> AdmissionDecision:
    logger.warning(
        f"WhatsApp webhook rejected: {outcome.value}",
        extra={
            "context": {
                "instance_id": instance_id,
                "reason": outcome.value,
                "source_address": source_address,
                **context,
            }
        },
    )
    return AdmissionDecision(outcome, retry_after=context.get("retry_after"), count=context.get("current_count"))


async def admit(
    db: Session,
    instance_id: Optional[str],
    *,
    headers: Mapping[str, str],
    source_address: str,
    shared_token: Optional[str] = None,
    limiter: Optional[WebhookRateLimiter] = None,
) -> AdmissionDecision:
    """Decide whether a provider callback may proceed to message processing."""
    source_address = source_address or "unknown"

    if not is_valid_instance_id(instance_id):
        return _reject(AdmissionOutcome.INVALID_INSTANCE_ID, instance_id, source_address)

    instance = load_instance(db, instance_id)
    if not instance:
        return _reject(AdmissionOutcome.INSTANCE_NOT_FOUND, instance_id, source_address)

    if not instance.is_active:
        return _reject(AdmissionOutcome.INSTANCE_INACTIVE, instance_id, source_address)

    api_settings = _api_settings(instance)

    expected_token = api_settings.get("webhook_token")
    if settings.webhook_validate_token and expected_token:
        provided_token = headers.get("X-Webhook-Token") or shared_token
        if not provided_token or not hmac.compare_digest(
            str(provided_token).encode("utf-8"), str(expected_token).encode("utf-8")
        ):
            return _reject(AdmissionOutcome.TOKEN_MISMATCH, instance_id, source_address)

    user_agent = headers.get("User-Agent")
    allowed_user_agents = _as_list(api_settings.get("allowed_user_agents"))
    if settings.webhook_validate_user_agent and allowed_user_agents and user_agent not in allowed_user_agents:
        return _reject(
            AdmissionOutcome.USER_AGENT_REJECTED,
            instance_id,
            source_address,
            user_agent=user_agent,
            allowed=allowed_user_agents,
        )

    allowed_ips = _as_list(api_settings.get("allowed_ips"))
    if settings.webhook_validate_ip and allowed_ips and source_address not in allowed_ips:
        return _reject(
            AdmissionOutcome.SOURCE_NOT_ALLOWED,
            instance_id,
            source_address,
            allowed_ips=allowed_ips,
        )

    count = None
    if settings.webhook_rate_limit_enabled:
        max_requests, window_seconds = get_rate_limit_settings(instance)
        result = await (limiter or webhook_rate_limiter).hit(
            rate_limit_key(instance_id, source_address), max_requests, window_seconds
        )
        if not result.allowed:
            return _reject(
                AdmissionOutcome.RATE_LIMITED,
                instance_id,
                source_address,
                current_count=result.count,
                max_requests=max_requests,
                retry_after=result.retry_after,
            )
        count = result.count

    logger.info(
        "WhatsApp webhook admitted",
        extra={
            "context": {
                "instance_id": instance_id,
                "source_address": source_address,
                "user_agent": user_agent,
                "content_type": headers.get("Content-Type"),
            }
        },
    )
    return AdmissionDecision(AdmissionOutcome.ADMITTED, instance=instance, count=count)
