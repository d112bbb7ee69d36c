from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Mapping, Optional, Protocol

from authkernel.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OUTBOX_SIZE = 100


@dataclass
class DeliveryResult:
    ok: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class EmailOptions:
    to: str
    tenant_id: str
    subject: Optional[str] = None
    from_address: Optional[str] = None
    from_name: Optional[str] = None


class EmailSender(Protocol):
    async def send_email(
        self, template: str, data: Mapping[str, Any], options: EmailOptions
    ) -> DeliveryResult: ...


def redact_address(address: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LoggingEmailSender:
    """Dev-mode email delivery: logs the message and keeps the most recent
    ``outbox_size`` messages in ``outbox``. ``outbox_size=0`` keeps none."""

    def __init__(self, outbox_size: int = DEFAULT_OUTBOX_SIZE):
        self.outbox: Deque[Dict[str, Any]] = deque(maxlen=max(0, outbox_size))
        self.sent = 0

    async def send_email(
        self, template: str, data: Mapping[str, Any], options: EmailOptions
    ) -> DeliveryResult:
        self.sent += 1
        message_id = f"dev-email-{self.sent}"
        self.outbox.append(
            {"id": message_id, "template": template, "data": dict(data), "options": options}
        )
        logger.info(
            "email_dev_mode",
            to=redact_address(options.to),
            template=template,
            tenant_id=options.tenant_id,
            subject=options.subject,
        )
        return DeliveryResult(ok=True, provider="logging", message_id=message_id)

