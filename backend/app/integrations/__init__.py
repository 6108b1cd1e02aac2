from __future__ import annotations

import os

from backend.app.integrations.base import DeliveryOutcome, MessagingGateway, WebhookVerificationResult
from backend.app.integrations.messaging import HttpMessagingGateway, gateway_is_configured
from backend.app.integrations.messaging_stub import StubMessagingGateway


HTTP_GATEWAY: HttpMessagingGateway | None = None
STUB_GATEWAY = StubMessagingGateway()


def get_gateway() -> MessagingGateway:
    if os.getenv("MESSAGING_USE_STUB", "").lower() == "true":
        return STUB_GATEWAY
    if not gateway_is_configured():
        return STUB_GATEWAY
    global HTTP_GATEWAY
    if HTTP_GATEWAY is None:
        HTTP_GATEWAY = HttpMessagingGateway()
    return HTTP_GATEWAY


__all__ = [
    "DeliveryOutcome",
    "MessagingGateway",
    "StubMessagingGateway",
    "WebhookVerificationResult",
    "get_gateway",
]
