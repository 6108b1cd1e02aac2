import pytest

from backend.app.domain.errors import NotFound, ValidationError
from backend.app.integrations import StubMessagingGateway
from backend.app.models import Notification, NotificationLog, Signal
from backend.app.services import notification_service, signal_ledger_service, subscription_service


SIGNAL_FIELDS = {
    "trading_pair": "EUR/USD",
    "signal_type": "buy",
    "entry_price": 1.0850,
    "stop_loss": 1.0820,
    "take_profit_1": 1.0900,
    "title": "EUR/USD long",
    "analysis": "Bounce off weekly support",
    "confidence_level": "high",
}

PHONES = {
    "alice": "+15550000001",
    "bob": "+15550000002",
    "carol": "+15550000003",
}


@pytest.fixture()
def subscribers(make_active_subscriber):
    for user_id, phone in PHONES.items():
        make_active_subscriber(user_id, phone=phone)
    return PHONES


@pytest.fixture()
def committed_signal(sqlite_session):
    signal, _ = signal_ledger_service.create_signal(sqlite_session, fields=SIGNAL_FIELDS, actor="admin-1")
    sqlite_session.commit()
    return signal


def test_created_signal_reaches_every_active_subscriber(sqlite_session, subscribers, committed_signal):
    gateway = StubMessagingGateway()

    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=gateway)

    assert (summary.total_subscribers, summary.success_count, summary.failure_count) == (3, 3, 0)
    assert summary.status == "ok"
    assert sorted(target for target, _ in gateway.sent) == sorted(PHONES.values())
    message = gateway.sent[0][1]
    assert "📊 *Pair*: EUR/USD" in message
    assert "*Type*: BUY" in message
    assert "💰 *Entry*: 1.085" in message
    assert "🎯 *TP1*: 1.09" in message
    assert "💪 *Confidence*: HIGH" in message

    inbox = sqlite_session.query(Notification).all()
    assert sorted(row.user_id for row in inbox) == sorted(PHONES)
    assert {row.title for row in inbox} == {"📈 New Signal: EUR/USD"}
    assert {row.message for row in inbox} == {"EUR/USD long - Entry at 1.085"}
    assert all(row.signal_id == committed_signal.id for row in inbox)


def test_one_failed_recipient_does_not_block_the_rest(sqlite_session, subscribers, committed_signal):
    gateway = StubMessagingGateway(failing_targets={PHONES["bob"]})

    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=gateway)

    assert (summary.total_subscribers, summary.success_count, summary.failure_count) == (3, 2, 1)
    assert summary.status == "partial_failure"
    assert summary.failures == [{"user_id": "bob", "target": PHONES["bob"], "error": "stub delivery failure"}]
    # Channel B is attempted for the failed recipient as well
    assert sqlite_session.query(Notification).filter_by(user_id="bob").count() == 1
    assert summary.inbox_created == 3

    logs = {row.user_id: row for row in sqlite_session.query(NotificationLog).all()}
    assert logs["bob"].success is False
    assert logs["bob"].error_message == "stub delivery failure"
    assert logs["bob"].status == "failed"
    assert logs["alice"].success is True
    assert logs["alice"].status == "sent"
    assert logs["alice"].sent_at is not None
    assert logs["alice"].message_id.startswith("stub-msg-")
    assert {row.event for row in logs.values()} == {"created"}


def test_gateway_exception_is_folded_into_summary(sqlite_session, subscribers, committed_signal):
    gateway = StubMessagingGateway(raising_targets={PHONES["carol"]})

    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=gateway, max_workers=1)

    assert (summary.success_count, summary.failure_count) == (2, 1)
    assert summary.failures[0]["user_id"] == "carol"
    assert summary.failures[0]["error"] == "stub gateway unreachable"
    assert sqlite_session.get(Signal, committed_signal.id).status == "active"


def test_subscriber_without_verified_contact_is_skipped(sqlite_session, make_active_subscriber, committed_signal):
    make_active_subscriber("alice", phone=PHONES["alice"])
    make_active_subscriber("dave")
    make_active_subscriber("erin", phone="+15550000009")
    subscription_service.upsert_subscriber_profile(sqlite_session, "erin", messaging_enabled=False)
    sqlite_session.commit()
    gateway = StubMessagingGateway()

    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=gateway)

    assert (summary.total_subscribers, summary.success_count, summary.failure_count) == (1, 1, 0)
    assert summary.skipped == 2
    assert sorted(summary.skipped_users) == ["dave", "erin"]
    assert summary.failures == []
    assert summary.status == "ok"
    assert [target for target, _ in gateway.sent] == [PHONES["alice"]]
    # unreachable subscribers still get the in-app notification
    assert summary.inbox_created == 3
    assert [row.user_id for row in sqlite_session.query(NotificationLog).all()] == ["alice"]


def test_nobody_reachable_reports_zero_failures(sqlite_session, make_active_subscriber, committed_signal):
    make_active_subscriber("dave")

    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=StubMessagingGateway())

    assert (summary.total_subscribers, summary.failure_count, summary.skipped) == (0, 0, 1)
    assert summary.status == "ok"


def test_only_active_subscriptions_are_recipients(sqlite_session, pricing_plans, subscribers, committed_signal):
    subscription_service.create_subscription(
        sqlite_session, user_id="pending-user", pricing_id=pricing_plans["monthly"].id, plan_type="monthly"
    )
    subscription_service.upsert_subscriber_profile(
        sqlite_session, "pending-user", phone_number="+15550000077", phone_verified=True
    )
    cancelled = subscription_service.open_subscription_for_user(sqlite_session, "carol")
    subscription_service.cancel_subscription(sqlite_session, cancelled.id)
    sqlite_session.commit()

    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=StubMessagingGateway())

    assert summary.total_subscribers == 2
    assert sqlite_session.query(Notification).filter_by(user_id="pending-user").count() == 0


def test_inbox_failure_never_affects_external_channel(sqlite_session, subscribers, committed_signal, monkeypatch):
    real_notification = notification_service.Notification

    def _broken_for_alice(**kwargs):
        if kwargs["user_id"] == "alice":
            kwargs["user_id"] = None
        return real_notification(**kwargs)

    monkeypatch.setattr(notification_service, "Notification", _broken_for_alice)
    gateway = StubMessagingGateway()

    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=gateway)

    assert (summary.success_count, summary.failure_count) == (3, 0)
    assert (summary.inbox_created, summary.inbox_failed) == (2, 1)
    assert summary.status == "partial_failure"
    assert sqlite_session.query(NotificationLog).count() == 3
    assert sorted(row.user_id for row in sqlite_session.query(real_notification).all()) == ["bob", "carol"]


def test_updated_signal_message_lists_changes(sqlite_session, subscribers, committed_signal):
    result = signal_ledger_service.update_signal(
        sqlite_session, committed_signal.id, fields={"stop_loss": 1.0800, "take_profit_2": 1.0950}
    )
    sqlite_session.commit()
    gateway = StubMessagingGateway()

    summary = notification_service.on_signal_updated(sqlite_session, result.signal, result.changes, gateway=gateway)

    assert summary.event == "updated"
    assert summary.success_count == 3
    message = gateway.sent[0][1]
    assert message.startswith("🔄 *Signal Update: EUR/USD long*")
    assert "• *Stop Loss*: 1.082 → 1.08" in message
    assert "• *TP2*: none → 1.095" in message
    assert "Entry" not in message
    inbox = sqlite_session.query(Notification).first()
    assert inbox.title == "🔄 Signal Updated: EUR/USD"
    assert inbox.message == "Stop Loss: 1.082 → 1.08, TP2: none → 1.095"


def test_manual_dispatch_replays_latest_ledger_event(sqlite_session, subscribers, committed_signal):
    gateway = StubMessagingGateway()
    created = notification_service.dispatch_signal_notifications(sqlite_session, committed_signal.id, gateway=gateway)
    assert created.event == "created"

    signal_ledger_service.update_signal(sqlite_session, committed_signal.id, fields={"stop_loss": 1.0800})
    sqlite_session.commit()
    updated = notification_service.dispatch_signal_notifications(sqlite_session, committed_signal.id, gateway=gateway)

    assert updated.event == "updated"
    assert "Stop Loss" in gateway.sent[-1][1]
    assert sqlite_session.query(NotificationLog).filter_by(event="updated").count() == 3


def test_dispatch_requires_committed_mutation(sqlite_session, subscribers, committed_signal):
    committed_signal.stop_loss = 1.07

    with pytest.raises(RuntimeError):
        notification_service.on_signal_created(sqlite_session, committed_signal, gateway=StubMessagingGateway())
    sqlite_session.rollback()


def test_dispatch_with_no_subscribers(sqlite_session, committed_signal):
    summary = notification_service.on_signal_created(sqlite_session, committed_signal, gateway=StubMessagingGateway())

    assert (summary.total_subscribers, summary.success_count, summary.failure_count) == (0, 0, 0)
    assert summary.status == "ok"


def test_mailbox_read_state_and_soft_delete(sqlite_session, subscribers, committed_signal):
    notification_service.on_signal_created(sqlite_session, committed_signal, gateway=StubMessagingGateway())
    second, _ = signal_ledger_service.create_signal(
        sqlite_session, fields={**SIGNAL_FIELDS, "trading_pair": "GBP/USD", "title": "Cable long"}
    )
    sqlite_session.commit()
    notification_service.on_signal_created(sqlite_session, second, gateway=StubMessagingGateway())

    alice = notification_service.list_notifications(sqlite_session, "alice")
    assert [row.title for row in alice] == ["📈 New Signal: GBP/USD", "📈 New Signal: EUR/USD"]
    assert notification_service.unread_count(sqlite_session, "alice") == 2

    notification_service.mark_read(sqlite_session, "alice", alice[0].id)
    sqlite_session.commit()
    assert notification_service.unread_count(sqlite_session, "alice") == 1
    unread = notification_service.list_notifications(sqlite_session, "alice", unread_only=True)
    assert [row.id for row in unread] == [alice[1].id]

    notification_service.delete_notification(sqlite_session, "alice", alice[1].id)
    sqlite_session.commit()
    assert [row.id for row in notification_service.list_notifications(sqlite_session, "alice")] == [alice[0].id]
    assert notification_service.unread_count(sqlite_session, "alice") == 0
    # the row is kept, only hidden from the mailbox
    assert sqlite_session.get(Notification, alice[1].id).deleted is True

    with pytest.raises(NotFound):
        notification_service.mark_read(sqlite_session, "alice", alice[1].id)
    with pytest.raises(NotFound):
        notification_service.mark_read(sqlite_session, "bob", alice[0].id)

    # other mailboxes are untouched
    assert notification_service.unread_count(sqlite_session, "bob") == 2
    assert notification_service.mark_all_read(sqlite_session, "bob") == 2
    sqlite_session.commit()
    assert notification_service.unread_count(sqlite_session, "bob") == 0
    assert notification_service.mark_all_read(sqlite_session, "bob") == 0
    assert notification_service.unread_count(sqlite_session, "carol") == 2


def test_delivery_receipts_move_status_forward(sqlite_session, subscribers, committed_signal):
    notification_service.on_signal_created(sqlite_session, committed_signal, gateway=StubMessagingGateway())
    logs = {row.user_id: row for row in sqlite_session.query(NotificationLog).all()}
    alice_msg = logs["alice"].message_id
    bob_msg = logs["bob"].message_id

    assert notification_service.update_delivery_status(sqlite_session, alice_msg, "delivered") == 1
    assert notification_service.update_delivery_status(sqlite_session, alice_msg, "read") == 1
    # late receipts never move a row backwards
    assert notification_service.update_delivery_status(sqlite_session, alice_msg, "delivered") == 0
    assert notification_service.update_delivery_status(
        sqlite_session, bob_msg, "failed", error="131026: Message undeliverable"
    ) == 1
    assert notification_service.update_delivery_status(sqlite_session, bob_msg, "read") == 0
    assert notification_service.update_delivery_status(sqlite_session, "unknown-id", "read") == 0
    sqlite_session.commit()

    sqlite_session.expire_all()
    alice = sqlite_session.get(NotificationLog, logs["alice"].id)
    assert alice.status == "read"
    assert alice.delivered_at is not None and alice.read_at is not None
    bob = sqlite_session.get(NotificationLog, logs["bob"].id)
    assert (bob.status, bob.success) == ("failed", False)
    assert bob.error_message == "131026: Message undeliverable"

    with pytest.raises(ValidationError):
        notification_service.update_delivery_status(sqlite_session, alice_msg, "bounced")
