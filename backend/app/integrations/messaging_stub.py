from __future__ import annotations

import threading
from typing import Iterable, Optional

from backend.app.domain.errors import ExternalServiceError
from backend.app.integrations.base import DeliveryOutcome, WebhookVerificationResult


class StubMessagingGateway:
    """
    In-process gateway for local runs and tests.

    Records every send and member add. Targets listed in `failing_targets` get a
    failed send, targets in `failing_member_targets` cannot join a group, and
    `fail_group_creation_after` makes provisioning fail once that many groups
    exist.
    """

    name = "stub"

    def __init__(
        self,
        *,
        failing_targets: Optional[Iterable[str]] = None,
        raising_targets: Optional[Iterable[str]] = None,
        failing_member_targets: Optional[Iterable[str]] = None,
        fail_group_creation_after: Optional[int] = None,
    ):
        self.failing_targets = set(failing_targets or ())
        self.raising_targets = set(raising_targets or ())
        self.failing_member_targets = set(failing_member_targets or ())
        self.fail_group_creation_after = fail_group_creation_after
        self.sent: list[tuple[str, str]] = []
        self.groups: list[tuple[str, str]] = []
        self.members: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def send_message(self, target: str, message: str) -> DeliveryOutcome:
        if target in self.raising_targets:
            raise ExternalServiceError("stub gateway unreachable", context={"target": target})
        with self._lock:
            self.sent.append((target, message))
            sequence = len(self.sent)
        if target in self.failing_targets:
            return DeliveryOutcome(target=target, success=False, error="stub delivery failure")
        return DeliveryOutcome(target=target, success=True, message_id=f"stub-msg-{sequence}")

    def create_group(self, group_name: str) -> str:
        with self._lock:
            if self.fail_group_creation_after is not None and len(self.groups) >= self.fail_group_creation_after:
                raise ExternalServiceError("stub gateway refused group creation", context={"group_name": group_name})
            channel_id = f"stub-group-{len(self.groups) + 1}"
            self.groups.append((channel_id, group_name))
        return channel_id

    def add_member(self, channel_id: str, target: str) -> DeliveryOutcome:
        if target in self.failing_member_targets:
            return DeliveryOutcome(target=target, success=False, error="stub member add refused")
        with self._lock:
            self.members.append((channel_id, target))
        return DeliveryOutcome(target=target, success=True)

    def verify_webhook(self, headers: dict[str, str], body: bytes) -> WebhookVerificationResult:
        # Dev-only stub: accept all payloads.
        _ = headers
        _ = body
        return WebhookVerificationResult(ok=True, reason="stub_accept_all")
