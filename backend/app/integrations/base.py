from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class DeliveryOutcome:
    target: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class WebhookVerificationResult:
    ok: bool
    reason: str


class MessagingGateway(Protocol):
    name: str

    def send_message(self, target: str, message: str) -> DeliveryOutcome:
        ...

    def create_group(self, group_name: str) -> str:
        """Provision an external broadcast channel and return its id."""
        ...

    def add_member(self, channel_id: str, target: str) -> DeliveryOutcome:
        ...

    def verify_webhook(self, headers: dict[str, str], body: bytes) -> WebhookVerificationResult:
        ...
