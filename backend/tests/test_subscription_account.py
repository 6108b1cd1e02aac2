from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from backend.app.domain.errors import Conflict, NotFound, QuotaExceeded, ValidationError
from backend.app.models import AuditLog, Subscription
from backend.app.services import subscription_service


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _create(session, plans, user_id="user-1", plan_type="per_pip", pips=100):
    sub = subscription_service.create_subscription(
        session,
        user_id=user_id,
        pricing_id=plans[plan_type].id,
        plan_type=plan_type,
        pips_purchased=pips if plan_type == "per_pip" else 0,
    )
    session.commit()
    return sub


def test_create_subscription_starts_pending_with_price_snapshot(sqlite_session, pricing_plans):
    sub = _create(sqlite_session, pricing_plans, plan_type="monthly")

    assert (sub.status, sub.payment_status) == ("pending", "pending")
    assert sub.amount_paid == 50.0

    subscription_service.update_pricing_plan(sqlite_session, "monthly", actor="admin-1", price=75.0)
    sqlite_session.commit()
    sqlite_session.expire_all()
    assert sqlite_session.get(Subscription, sub.id).amount_paid == 50.0


def test_second_open_subscription_conflicts(sqlite_session, pricing_plans):
    _create(sqlite_session, pricing_plans, plan_type="monthly")

    with pytest.raises(Conflict):
        subscription_service.create_subscription(
            sqlite_session,
            user_id="user-1",
            pricing_id=pricing_plans["per_pip"].id,
            plan_type="per_pip",
            pips_purchased=10,
        )
    sqlite_session.rollback()
    assert sqlite_session.query(Subscription).filter_by(user_id="user-1").count() == 1


def test_open_subscription_uniqueness_is_enforced_by_the_store(sqlite_session, pricing_plans):
    _create(sqlite_session, pricing_plans, plan_type="monthly")

    sqlite_session.add(
        Subscription(
            user_id="user-1",
            pricing_id=pricing_plans["monthly"].id,
            subscription_type="monthly",
            status="pending",
            payment_status="pending",
            amount_paid=50.0,
        )
    )
    with pytest.raises(IntegrityError):
        sqlite_session.flush()
    sqlite_session.rollback()


def test_new_subscription_allowed_after_cancel(sqlite_session, pricing_plans):
    first = _create(sqlite_session, pricing_plans, plan_type="monthly")
    subscription_service.cancel_subscription(sqlite_session, first.id, actor="user-1", now=NOW)
    sqlite_session.commit()

    second = _create(sqlite_session, pricing_plans, plan_type="per_pip", pips=20)
    assert second.id != first.id


def test_create_subscription_validates_plan(sqlite_session, pricing_plans):
    with pytest.raises(ValidationError):
        subscription_service.create_subscription(
            sqlite_session, user_id="u", pricing_id=pricing_plans["monthly"].id, plan_type="per_pip"
        )
    with pytest.raises(ValidationError):
        subscription_service.create_subscription(
            sqlite_session, user_id="u", pricing_id=pricing_plans["monthly"].id, plan_type="weekly"
        )
    with pytest.raises(NotFound):
        subscription_service.create_subscription(
            sqlite_session, user_id="u", pricing_id="missing", plan_type="monthly"
        )

    subscription_service.update_pricing_plan(sqlite_session, "monthly", actor="admin-1", is_active=False)
    sqlite_session.commit()
    with pytest.raises(ValidationError):
        subscription_service.create_subscription(
            sqlite_session, user_id="u", pricing_id=pricing_plans["monthly"].id, plan_type="monthly"
        )


def test_confirm_payment_activates_and_sets_monthly_period(sqlite_session, pricing_plans):
    sub = _create(sqlite_session, pricing_plans, plan_type="monthly")

    subscription_service.confirm_payment(sqlite_session, sub.id, payment_reference="pay-1", now=NOW)
    sqlite_session.commit()

    assert sub.status == "active"
    assert sub.payment_status == "completed"
    assert sub.payment_reference == "pay-1"
    assert sub.start_date.replace(tzinfo=timezone.utc) == NOW
    assert sub.end_date.replace(tzinfo=timezone.utc) == NOW + timedelta(days=30)


def test_confirm_payment_is_idempotent_for_same_payment(sqlite_session, pricing_plans):
    sub = _create(sqlite_session, pricing_plans)
    subscription_service.confirm_payment(sqlite_session, sub.id, payment_reference="pay-1", now=NOW)
    sqlite_session.commit()

    again = subscription_service.confirm_payment(
        sqlite_session, sub.id, payment_reference="pay-1", now=NOW + timedelta(days=3)
    )
    assert again.start_date.replace(tzinfo=timezone.utc) == NOW

    with pytest.raises(Conflict):
        subscription_service.confirm_payment(sqlite_session, sub.id, payment_reference="pay-2", now=NOW)


def test_confirm_payment_errors(sqlite_session, pricing_plans):
    with pytest.raises(NotFound):
        subscription_service.confirm_payment(sqlite_session, "missing", now=NOW)

    sub = _create(sqlite_session, pricing_plans)
    subscription_service.cancel_subscription(sqlite_session, sub.id, now=NOW)
    sqlite_session.commit()
    with pytest.raises(Conflict):
        subscription_service.confirm_payment(sqlite_session, sub.id, now=NOW)


def test_consume_pips_enforces_quota(sqlite_session, pricing_plans):
    sub = _create(sqlite_session, pricing_plans, pips=100)
    subscription_service.confirm_payment(sqlite_session, sub.id, now=NOW)
    subscription_service.admin_update_subscription(
        sqlite_session, sub.id, fields={"pips_used": 90}, actor="admin-1"
    )
    sqlite_session.commit()

    updated = subscription_service.consume_pips(sqlite_session, sub.id, 5)
    sqlite_session.commit()
    assert updated.pips_used == 95

    with pytest.raises(QuotaExceeded) as excinfo:
        subscription_service.consume_pips(sqlite_session, sub.id, 20)
    sqlite_session.rollback()
    assert excinfo.value.context["pips_used"] == 95
    assert sqlite_session.get(Subscription, sub.id).pips_used == 95

    exact = subscription_service.consume_pips(sqlite_session, sub.id, 5)
    assert exact.pips_used == exact.pips_purchased == 100


def test_consume_pips_sequence_never_exceeds_purchase(sqlite_session, pricing_plans):
    sub = _create(sqlite_session, pricing_plans, pips=30)
    subscription_service.confirm_payment(sqlite_session, sub.id, now=NOW)
    sqlite_session.commit()

    for amount in (7, 11, 9, 8, 3, 1, 20):
        try:
            subscription_service.consume_pips(sqlite_session, sub.id, amount)
            sqlite_session.commit()
        except QuotaExceeded:
            sqlite_session.rollback()
        current = sqlite_session.get(Subscription, sub.id)
        assert current.pips_used <= current.pips_purchased

    assert sqlite_session.get(Subscription, sub.id).pips_used == 30


def test_consume_pips_rejects_wrong_plan_state_and_amount(sqlite_session, pricing_plans):
    monthly = _create(sqlite_session, pricing_plans, user_id="monthly-user", plan_type="monthly")
    subscription_service.confirm_payment(sqlite_session, monthly.id, now=NOW)
    sqlite_session.commit()
    with pytest.raises(ValidationError):
        subscription_service.consume_pips(sqlite_session, monthly.id, 1)

    metered = _create(sqlite_session, pricing_plans, user_id="metered-user", pips=10)
    with pytest.raises(Conflict):
        subscription_service.consume_pips(sqlite_session, metered.id, 1)
    with pytest.raises(ValidationError):
        subscription_service.consume_pips(sqlite_session, metered.id, 0)

    subscription_service.confirm_payment(sqlite_session, metered.id, now=NOW)
    subscription_service.expire_subscription(sqlite_session, metered.id, now=NOW)
    sqlite_session.commit()
    with pytest.raises(Conflict):
        subscription_service.consume_pips(sqlite_session, metered.id, 1)

    with pytest.raises(NotFound):
        subscription_service.consume_pips(sqlite_session, "missing", 1)


def test_state_machine_transitions(sqlite_session, pricing_plans):
    sub = _create(sqlite_session, pricing_plans)
    with pytest.raises(Conflict):
        subscription_service.expire_subscription(sqlite_session, sub.id, now=NOW)

    subscription_service.confirm_payment(sqlite_session, sub.id, now=NOW)
    subscription_service.cancel_subscription(sqlite_session, sub.id, actor="user-1", now=NOW)
    sqlite_session.commit()
    assert sub.status == "cancelled"

    for transition in (subscription_service.cancel_subscription, subscription_service.expire_subscription):
        with pytest.raises(Conflict):
            transition(sqlite_session, sub.id, now=NOW)

    events = sqlite_session.query(AuditLog).filter_by(entity_id=sub.id).all()
    assert [event.event_type for event in events] == ["subscription_cancelled"]


def test_admin_update_is_audited_and_guards_quota(sqlite_session, pricing_plans):
    sub = _create(sqlite_session, pricing_plans, pips=50)

    subscription_service.admin_update_subscription(
        sqlite_session,
        sub.id,
        fields={"status": "active", "payment_status": "completed", "amount_paid": 42.5},
        actor="admin-1",
        reason="manual bank transfer",
    )
    sqlite_session.commit()
    assert (sub.status, sub.payment_status, sub.amount_paid) == ("active", "completed", 42.5)

    audit = sqlite_session.query(AuditLog).filter_by(event_type="subscription_admin_update").one()
    assert audit.actor == "admin-1"
    assert audit.reason == "manual bank transfer"
    assert audit.before_state["status"] == "pending"
    assert audit.after_state["amount_paid"] == 42.5

    with pytest.raises(ValidationError):
        subscription_service.admin_update_subscription(
            sqlite_session, sub.id, fields={"pips_used": 60}, actor="admin-1"
        )
    with pytest.raises(ValidationError):
        subscription_service.admin_update_subscription(
            sqlite_session, sub.id, fields={"status": "paused"}, actor="admin-1"
        )
    with pytest.raises(ValidationError):
        subscription_service.admin_update_subscription(
            sqlite_session, sub.id, fields={"user_id": "someone-else"}, actor="admin-1"
        )


def test_admin_update_cannot_reopen_second_subscription(sqlite_session, pricing_plans):
    old = _create(sqlite_session, pricing_plans, plan_type="monthly")
    subscription_service.cancel_subscription(sqlite_session, old.id, now=NOW)
    sqlite_session.commit()
    current = _create(sqlite_session, pricing_plans, plan_type="per_pip", pips=5)

    with pytest.raises(Conflict) as excinfo:
        subscription_service.admin_update_subscription(
            sqlite_session, old.id, fields={"status": "active"}, actor="admin-1"
        )
    assert excinfo.value.context == {"user_id": "user-1"}

    # the session stays usable and neither row moved
    assert sqlite_session.get(Subscription, old.id).status == "cancelled"
    assert sqlite_session.get(Subscription, current.id).status == "pending"
    assert sqlite_session.query(AuditLog).filter_by(event_type="subscription_admin_update").count() == 0
    updated = subscription_service.admin_update_subscription(
        sqlite_session, current.id, fields={"pips_purchased": 10}, actor="admin-1"
    )
    assert updated.pips_purchased == 10


def test_expire_due_subscriptions_sweeps_past_end_date(sqlite_session, pricing_plans):
    due = _create(sqlite_session, pricing_plans, user_id="due", plan_type="monthly")
    fresh = _create(sqlite_session, pricing_plans, user_id="fresh", plan_type="monthly")
    metered = _create(sqlite_session, pricing_plans, user_id="metered", pips=5)
    subscription_service.confirm_payment(sqlite_session, due.id, now=NOW - timedelta(days=40))
    subscription_service.confirm_payment(sqlite_session, fresh.id, now=NOW - timedelta(days=5))
    subscription_service.confirm_payment(sqlite_session, metered.id, now=NOW - timedelta(days=90))
    sqlite_session.commit()

    expired = subscription_service.expire_due_subscriptions(sqlite_session, now=NOW)
    sqlite_session.commit()

    assert expired == [due.id]
    sqlite_session.expire_all()
    assert sqlite_session.get(Subscription, due.id).status == "expired"
    assert sqlite_session.get(Subscription, fresh.id).status == "active"
    assert sqlite_session.get(Subscription, metered.id).status == "active"
    assert subscription_service.expire_due_subscriptions(sqlite_session, now=NOW) == []


def test_subscription_stats(sqlite_session, pricing_plans):
    monthly = _create(sqlite_session, pricing_plans, user_id="a", plan_type="monthly")
    metered = _create(sqlite_session, pricing_plans, user_id="b", pips=10)
    _create(sqlite_session, pricing_plans, user_id="c", plan_type="monthly")
    subscription_service.confirm_payment(sqlite_session, monthly.id, now=NOW)
    subscription_service.confirm_payment(sqlite_session, metered.id, now=NOW)
    sqlite_session.commit()

    stats = subscription_service.subscription_stats(sqlite_session)

    assert stats == {
        "total_subscriptions": 3,
        "active_subscriptions": 2,
        "total_revenue": 51.0,
        "monthly_subscribers": 1,
        "per_pip_subscribers": 1,
    }


def test_pricing_update_is_audited(sqlite_session, pricing_plans):
    subscription_service.update_pricing_plan(
        sqlite_session, "per_pip", actor="admin-1", price=1.5, description="Metered"
    )
    sqlite_session.commit()

    plans = {plan.pricing_type: plan for plan in subscription_service.list_pricing_plans(sqlite_session)}
    assert plans["per_pip"].price == 1.5
    audit = sqlite_session.query(AuditLog).filter_by(event_type="pricing_updated").one()
    assert audit.before_state["price"] == 1.0
    assert audit.after_state["price"] == 1.5

    with pytest.raises(ValidationError):
        subscription_service.update_pricing_plan(sqlite_session, "yearly", actor="admin-1", price=1.0)
    with pytest.raises(ValidationError):
        subscription_service.update_pricing_plan(sqlite_session, "monthly", actor="admin-1", price=-5)


def test_subscriber_profile_number_change_clears_verification(sqlite_session):
    profile = subscription_service.upsert_subscriber_profile(
        sqlite_session, "user-1", phone_number="+44 7700 900123", phone_verified=True
    )
    assert profile.phone_number == "+447700900123"
    assert profile.phone_verified is True

    profile = subscription_service.upsert_subscriber_profile(sqlite_session, "user-1", phone_number="+447700900999")
    assert profile.phone_verified is False

    with pytest.raises(ValidationError):
        subscription_service.upsert_subscriber_profile(sqlite_session, "user-1", phone_number="call me")
