from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
from typing import Any, Optional

from backend.app.domain.errors import ExternalServiceError
from backend.app.integrations.base import DeliveryOutcome, WebhookVerificationResult


logger = logging.getLogger(__name__)


def gateway_is_configured() -> bool:
    return bool(os.getenv("MESSAGING_GATEWAY_URL") and os.getenv("MESSAGING_GATEWAY_TOKEN"))


def gateway_timeout() -> float:
    return float(os.getenv("MESSAGING_GATEWAY_TIMEOUT_SECONDS", "20"))


def webhook_secret() -> str:
    return os.getenv("MESSAGING_WEBHOOK_SECRET", "")


def _build_httpx_client(base_url: str, timeout: float):
    import httpx  # local import to avoid hard dependency at import time

    return httpx.Client(base_url=base_url, timeout=timeout)


def normalize_phone_number(raw: str) -> str:
    digits = re.sub(r"[^0-9]", "", raw or "")
    return f"+{digits}" if digits else ""


class HttpMessagingGateway:
    """
    JSON-over-HTTP messaging gateway.

    POST /messages              {"to", "text"} -> {"id"}
    POST /groups                {"name"}       -> {"id"}
    POST /groups/{id}/members   {"phone"}      -> {"status"}

    Delivery-status webhooks are signed as `X-Hub-Signature-256: sha256=<hex>`
    (HMAC-SHA256 of the raw body with MESSAGING_WEBHOOK_SECRET).
    """

    name = "http"

    def __init__(self, *, base_url: Optional[str] = None, token: Optional[str] = None, client: Optional[Any] = None):
        self.base_url = base_url or os.getenv("MESSAGING_GATEWAY_URL") or ""
        self.token = token or os.getenv("MESSAGING_GATEWAY_TOKEN") or ""
        if not self.base_url or not self.token:
            raise RuntimeError("MESSAGING_GATEWAY_URL and MESSAGING_GATEWAY_TOKEN must be configured.")
        self._client = client or _build_httpx_client(self.base_url, gateway_timeout())

    def _post(self, path: str, payload: dict) -> dict:
        import httpx

        try:
            response = self._client.post(
                path,
                json=payload,
                headers={"Authorization": f"Bearer {self.token}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"gateway rejected request: HTTP {exc.response.status_code}",
                context={"path": path, "status": exc.response.status_code},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError(f"gateway unreachable: {exc}", context={"path": path}) from exc
        if not isinstance(data, dict):
            raise ExternalServiceError("gateway returned an unexpected payload", context={"path": path})
        return data

    def send_message(self, target: str, message: str) -> DeliveryOutcome:
        to = normalize_phone_number(target)
        if not to:
            return DeliveryOutcome(target=target, success=False, error="invalid target")
        try:
            data = self._post("/messages", {"to": to, "text": message})
        except ExternalServiceError as exc:
            logger.warning("Message to %s failed: %s", to, exc.detail)
            return DeliveryOutcome(target=target, success=False, error=exc.detail)
        message_id = data.get("id") or (data.get("data") or {}).get("id")
        if data.get("error") or not message_id:
            return DeliveryOutcome(target=target, success=False, error=str(data.get("error") or "missing message id"))
        return DeliveryOutcome(target=target, success=True, message_id=str(message_id))

    def create_group(self, group_name: str) -> str:
        data = self._post("/groups", {"name": group_name})
        group_id = data.get("id") or (data.get("data") or {}).get("id")
        if not group_id:
            raise ExternalServiceError("gateway did not return a group id", context={"group_name": group_name})
        return str(group_id)

    def add_member(self, channel_id: str, target: str) -> DeliveryOutcome:
        phone = normalize_phone_number(target)
        if not phone:
            return DeliveryOutcome(target=target, success=False, error="invalid target")
        try:
            data = self._post(f"/groups/{channel_id}/members", {"phone": phone})
        except ExternalServiceError as exc:
            logger.warning("Adding %s to group %s failed: %s", phone, channel_id, exc.detail)
            return DeliveryOutcome(target=target, success=False, error=exc.detail)
        status = data.get("status", 200)
        if data.get("error") or status != 200:
            return DeliveryOutcome(
                target=target,
                success=False,
                error=str(data.get("error") or data.get("message") or f"status {status}"),
            )
        return DeliveryOutcome(target=target, success=True)

    def verify_webhook(self, headers: dict[str, str], body: bytes) -> WebhookVerificationResult:
        secret = webhook_secret()
        if not secret:
            logger.warning("Webhook signature verification skipped: MESSAGING_WEBHOOK_SECRET is not set")
            return WebhookVerificationResult(ok=True, reason="no_secret_configured")
        lowered = {key.lower(): value for key, value in headers.items()}
        signature = lowered.get("x-hub-signature-256", "")
        if not signature.startswith("sha256="):
            return WebhookVerificationResult(ok=False, reason="missing_signature")
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature[len("sha256="):]):
            return WebhookVerificationResult(ok=False, reason="signature_mismatch")
        return WebhookVerificationResult(ok=True, reason="signature_valid")
